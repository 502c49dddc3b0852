"""Stateless issuance and verification of signed access tokens.

Access tokens are HS256 JWTs. They are verified locally on every request and
never stored, so an issued token stays valid until it expires; keep
``access_token_expiry`` short.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from musicez.config import JWTConfig
from musicez.logging import get_logger
from musicez.service.errors import ConfigurationError, TokenValidationError
from musicez.storage.models import AccessTokenClaims, Identity

logger = get_logger(__name__)

ALGORITHM = "HS256"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def _require_text(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _check_config(config: JWTConfig) -> None:
    if not _require_text(config.secret):
        raise ConfigurationError("JWT secret is required")
    if not _require_text(config.issuer) or not _require_text(config.audience):
        raise ConfigurationError("JWT issuer and audience are required")
    if not _require_text(config.access_token_expiry):
        raise ConfigurationError("Access token expiry is required")


def issue_access_token(
    identity: Identity,
    config: JWTConfig,
    *,
    now: Optional[Callable[[], datetime]] = None,
) -> str:
    if identity is None:
        raise ConfigurationError("User data is required")
    if not _require_text(getattr(identity, "id", None)):
        raise ConfigurationError("User ID is required")
    if not _require_text(getattr(identity, "email", None)):
        raise ConfigurationError("User email is required")
    _check_config(config)

    issued = (now or _utcnow)()
    expires = issued + config.access_token_ttl
    payload = {
        "sub": identity.id,
        "email": identity.email,
        "name": identity.name,
        "email_verified": bool(identity.email_verified),
        "iat": int(issued.timestamp()),
        "exp": int(expires.timestamp()),
        "iss": config.issuer,
        "aud": config.audience,
    }
    header = {"alg": ALGORITHM, "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(config.secret, signing_input)}"


def _decode_unverified(token: str) -> tuple[str, str, str, dict[str, Any], dict[str, Any]]:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        raise TokenValidationError("Invalid token: malformed", reason="malformed") from None
    # base64url is ASCII; anything else cannot be a signature we issued
    if not token.isascii():
        raise TokenValidationError("Invalid token: malformed", reason="malformed")
    try:
        header = json.loads(_decode_segment(header_b64))
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, UnicodeDecodeError):
        raise TokenValidationError("Invalid token: malformed", reason="malformed") from None
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise TokenValidationError("Invalid token: malformed", reason="malformed")
    return header_b64, payload_b64, sig_b64, header, payload


def validate_access_token(
    token: str,
    config: JWTConfig,
    *,
    now: Optional[Callable[[], datetime]] = None,
) -> AccessTokenClaims:
    if not _require_text(token):
        raise TokenValidationError("Token is required", reason="missing")
    if not _require_text(config.secret):
        raise ConfigurationError("JWT secret is required for validation")

    header_b64, payload_b64, sig_b64, header, payload = _decode_unverified(token)

    # Reject anything but the project algorithm to prevent alg confusion
    if header.get("alg") != ALGORITHM:
        logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
        raise TokenValidationError("Invalid token: unsupported algorithm", reason="malformed")

    expected_sig = _sign(config.secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig, sig_b64):
        raise TokenValidationError("Invalid token: signature mismatch", reason="bad_signature")

    exp = payload.get("exp")
    try:
        exp_ts = float(exp)
    except (TypeError, ValueError):
        raise TokenValidationError("Invalid token: missing expiry", reason="bad_claims") from None
    current = (now or _utcnow)().timestamp()
    if exp_ts <= current - config.leeway_seconds:
        raise TokenValidationError("Token has expired", reason="expired")

    if payload.get("iss") != config.issuer:
        raise TokenValidationError("Invalid token: issuer mismatch", reason="bad_claims")
    aud = payload.get("aud")
    if isinstance(aud, list):
        valid_aud = config.audience in aud
    else:
        valid_aud = aud == config.audience
    if not valid_aud:
        raise TokenValidationError("Invalid token: audience mismatch", reason="bad_claims")

    if not _require_text(payload.get("sub")):
        raise TokenValidationError("Token missing user ID (sub claim)", reason="bad_claims")
    if not _require_text(payload.get("email")):
        raise TokenValidationError("Token missing email claim", reason="bad_claims")

    iat = payload.get("iat")
    issued_at = (
        datetime.fromtimestamp(float(iat), tz=timezone.utc)
        if isinstance(iat, (int, float))
        else datetime.fromtimestamp(exp_ts, tz=timezone.utc) - config.access_token_ttl
    )
    return AccessTokenClaims(
        subject_id=payload["sub"],
        email=payload["email"],
        name=payload.get("name"),
        email_verified=bool(payload.get("email_verified", False)),
        issued_at=issued_at,
        expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
        issuer=payload["iss"],
        audience=config.audience,
    )


def get_token_expiration(token: str) -> datetime:
    """Read ``exp`` without verifying the signature."""
    if not _require_text(token):
        raise TokenValidationError("Token is required", reason="missing")
    _, _, _, _, payload = _decode_unverified(token)
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)):
        raise TokenValidationError("Invalid token format", reason="malformed")
    return datetime.fromtimestamp(exp, tz=timezone.utc)


def is_token_expired(
    token: str, *, now: Optional[Callable[[], datetime]] = None
) -> bool:
    """Unreadable tokens count as expired."""
    try:
        expiration = get_token_expiration(token)
    except TokenValidationError:
        return True
    return expiration <= (now or _utcnow)()


__all__ = [
    "ALGORITHM",
    "issue_access_token",
    "validate_access_token",
    "get_token_expiration",
    "is_token_expired",
]
