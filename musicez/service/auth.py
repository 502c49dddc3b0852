from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from musicez.config import JWTConfig, SessionConfig
from musicez.logging import get_logger
from musicez.service import security
from musicez.service.errors import (
    InvalidRefreshToken,
    InvalidRefreshTokenFormat,
    TokenValidationError,
)
from musicez.service.security import SecurityMonitor
from musicez.service.sessions import SessionRegistry, is_refresh_token_format, token_ref
from musicez.service.tokens import validate_access_token
from musicez.storage.models import AccessTokenClaims, DeviceInfo, Identity, SecurityEvent, TokenPair

logger = get_logger(__name__)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credentials = credentials.strip()
    return credentials or None


class AuthService:
    """Entry points used by the HTTP layer once credentials are verified.

    Password and account checks happen upstream; this service only issues,
    rotates, and revokes tokens for an already authenticated identity.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        jwt_config: JWTConfig,
        session_config: Optional[SessionConfig] = None,
        *,
        monitor: Optional[SecurityMonitor] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.registry = registry
        self.jwt_config = jwt_config
        self.session_config = session_config or SessionConfig()
        self.monitor = monitor
        self._clock = now or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _device(self, device_info: Optional[DeviceInfo]) -> Optional[DeviceInfo]:
        return device_info if self.session_config.track_device_info else None

    async def issue_tokens(
        self, identity: Identity, device_info: Optional[DeviceInfo] = None
    ) -> TokenPair:
        device_info = self._device(device_info)
        if self.monitor is not None:
            suspicious = await self.monitor.detect_suspicious_activity(identity.id, device_info)
            if suspicious:
                # Advisory only; the session is still issued
                self.logger.warning("suspicious_login", user_id=identity.id)
        return await self.registry.issue_token_pair(identity, device_info)

    async def login(
        self, identity: Identity, device_info: Optional[DeviceInfo] = None
    ) -> TokenPair:
        pair = await self.issue_tokens(identity, device_info)
        self.logger.info("login_success", user_id=identity.id)
        return pair

    async def register(
        self, identity: Identity, device_info: Optional[DeviceInfo] = None
    ) -> TokenPair:
        pair = await self.issue_tokens(identity, device_info)
        self.logger.info("registration_tokens_issued", user_id=identity.id)
        return pair

    async def refresh(
        self, refresh_token: str, device_info: Optional[DeviceInfo] = None
    ) -> TokenPair:
        if not is_refresh_token_format(refresh_token):
            raise InvalidRefreshTokenFormat("Invalid refresh token format")
        device_info = self._device(device_info)
        if (
            self.session_config.require_device_consistency
            and device_info is not None
            and self.monitor is not None
            and await self.monitor.detect_device_change(refresh_token, device_info)
        ):
            session = await self.registry.get_session(refresh_token)
            if session and session.user_id:
                await self.monitor.log_security_event(
                    SecurityEvent(
                        type=security.DEVICE_MISMATCH,
                        user_id=session.user_id,
                        timestamp=self._clock(),
                        session_id=refresh_token,
                        device_info=device_info,
                    )
                )
            self.logger.warning("refresh_device_mismatch", session_ref=token_ref(refresh_token))
            raise InvalidRefreshToken("Invalid refresh token")
        return await self.registry.refresh_tokens(refresh_token)

    async def logout(self, refresh_token: str) -> bool:
        if not is_refresh_token_format(refresh_token):
            raise InvalidRefreshTokenFormat("Invalid refresh token format")
        return await self.registry.revoke_refresh_token(refresh_token)

    async def logout_all(self, user_id: str) -> int:
        count = await self.registry.revoke_all_user_tokens(user_id)
        self.logger.info("logout_all", user_id=user_id, count=count)
        return count

    def verify(self, token: Optional[str]) -> AccessTokenClaims:
        return validate_access_token(token or "", self.jwt_config, now=self._clock)

    def authenticate(self, authorization: Optional[str]) -> Identity:
        """Resolve an ``Authorization`` header to the identity it was issued for."""
        token = extract_bearer_token(authorization)
        if token is None:
            raise TokenValidationError("Access token required", reason="missing")
        return self.verify(token).to_identity()


__all__ = ["AuthService", "extract_bearer_token"]
