from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` so the HTTP layer can translate it without inspecting the
    message:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Signing configuration or identity input is incomplete."""
    error_code = "configuration_error"


class TokenValidationError(AuthenticationError):
    """An access token failed verification.

    ``reason`` is one of ``missing``, ``malformed``, ``bad_signature``,
    ``bad_claims`` or ``expired``; an unsupported ``alg`` header counts as
    malformed. Messages never echo the signing secret or the token itself.
    """

    error_code = "invalid_token"

    def __init__(self, message: str, *, reason: str = "malformed") -> None:
        super().__init__(
            message,
            detail={"reason": reason},
            error_code="token_expired" if reason == "expired" else None,
        )
        self.reason = reason

    @property
    def expired(self) -> bool:
        return self.reason == "expired"


class InvalidRefreshTokenFormat(ValidationError):
    error_code = "invalid_refresh_token_format"


class InvalidRefreshToken(AuthenticationError):
    """Unknown, consumed, or otherwise unusable refresh token."""
    error_code = "invalid_refresh_token"


class RefreshTokenExpired(AuthenticationError):
    error_code = "refresh_token_expired"


class AmbiguousRefreshToken(ServerError):
    """More than one record matched a refresh token; data integrity failure."""
    error_code = "ambiguous_refresh_token"


class SessionLimitExceeded(ConflictError):
    """The user already holds the maximum number of live sessions."""
    error_code = "session_limit_exceeded"


class SessionNotFound(NotFoundError):
    error_code = "session_not_found"


class AmbiguousSession(ServerError):
    error_code = "ambiguous_session"


class SessionCorrupt(ServerError):
    """A stored session payload could not be decoded."""
    error_code = "session_corrupt"


class SessionValidationError(ServerError):
    """A session record or session input is structurally invalid.

    Raised with ``status_code=400`` for bad caller input, and with the
    default 500 when a stored record is missing required fields.
    """
    error_code = "session_invalid"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
    "TokenValidationError",
    "InvalidRefreshTokenFormat",
    "InvalidRefreshToken",
    "RefreshTokenExpired",
    "AmbiguousRefreshToken",
    "SessionLimitExceeded",
    "SessionNotFound",
    "AmbiguousSession",
    "SessionCorrupt",
    "SessionValidationError",
]
