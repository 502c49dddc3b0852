"""Session registry with refresh-token rotation.

A session id doubles as the opaque refresh token. Each live session is one
JSON record at ``session:{user_id}:{session_id}`` whose store TTL matches its
``expires_at``; rotation claims the old record with GETDEL so a refresh token
can be redeemed at most once.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from musicez.config import JWTConfig, SessionConfig
from musicez.logging import credential_ref, get_logger
from musicez.service import security
from musicez.service.errors import (
    AmbiguousRefreshToken,
    AmbiguousSession,
    InvalidRefreshToken,
    InvalidRefreshTokenFormat,
    RefreshTokenExpired,
    SessionCorrupt,
    SessionLimitExceeded,
    SessionNotFound,
    SessionValidationError,
)
from musicez.service.security import SecurityEventLog
from musicez.service.tokens import issue_access_token
from musicez.storage.common import TTL_KEY_MISSING, TTLStore, is_safe_key_component
from musicez.storage.errors import StoreError
from musicez.storage.models import (
    DeviceInfo,
    Identity,
    SecurityEvent,
    SessionRecord,
    TokenPair,
    session_key,
)

logger = get_logger(__name__)

REFRESH_TOKEN_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def is_refresh_token_format(token: object) -> bool:
    return isinstance(token, str) and bool(REFRESH_TOKEN_PATTERN.match(token))


def token_ref(token: str) -> str:
    return credential_ref(token)


class SessionRegistry:
    def __init__(
        self,
        store: TTLStore,
        jwt_config: JWTConfig,
        session_config: Optional[SessionConfig] = None,
        *,
        events: Optional[SecurityEventLog] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.jwt_config = jwt_config
        self.session_config = session_config or SessionConfig()
        self.events = events
        self._clock = now or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @property
    def max_sessions(self) -> int:
        return self.session_config.max_sessions_per_user

    def _check_component(self, value: object, label: str) -> str:
        if not isinstance(value, str) or not is_safe_key_component(value):
            raise SessionValidationError(f"{label} is required", status_code=400)
        return value

    async def _emit(self, event: SecurityEvent) -> None:
        if self.events is not None:
            await self.events.log_security_event(event)

    async def _scan(self, session_id: str) -> List[str]:
        return await self.store.keys(session_key("*", session_id))

    def _decode(self, key: str, raw: str) -> SessionRecord:
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, TypeError, KeyError) as exc:
            self.logger.error("session_corrupt", key_ref=token_ref(key), error=str(exc))
            raise SessionCorrupt("Session data is corrupted") from exc

    async def _write(
        self,
        user_id: str,
        *,
        snapshot: Optional[Identity],
        device_info: Optional[DeviceInfo],
    ) -> SessionRecord:
        now = self._now()
        lifetime = self.jwt_config.refresh_token_ttl
        record = SessionRecord(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            issued_at=now,
            expires_at=now + lifetime,
            last_activity=now,
            is_active=True,
            device_info=device_info if self.session_config.track_device_info else None,
            user_snapshot=snapshot,
        )
        await self.store.set(record.key, record.to_json(), int(lifetime.total_seconds()))
        return record

    async def _enforce_cap(self, user_id: str) -> None:
        if self.max_sessions <= 0:
            return
        # Count-then-write is not atomic; concurrent creates can overshoot.
        existing = await self.store.keys(session_key(user_id, "*"))
        if len(existing) >= self.max_sessions:
            self.logger.warning(
                "session_limit_exceeded",
                user_id=user_id,
                active=len(existing),
                limit=self.max_sessions,
            )
            raise SessionLimitExceeded(
                f"Maximum sessions ({self.max_sessions}) exceeded",
                detail={"limit": self.max_sessions},
            )

    async def create_session(
        self,
        user: Union[Identity, str],
        device_info: Optional[DeviceInfo] = None,
    ) -> SessionRecord:
        snapshot = user if isinstance(user, Identity) else None
        user_id = self._check_component(
            snapshot.id if snapshot else user, "User ID"
        )
        await self._enforce_cap(user_id)
        record = await self._write(user_id, snapshot=snapshot, device_info=device_info)
        self.logger.info(
            "session_created",
            user_id=user_id,
            session_ref=token_ref(record.session_id),
            expires_at=record.expires_at.isoformat(),
        )
        await self._emit(
            SecurityEvent(
                type=security.SESSION_CREATED,
                user_id=user_id,
                timestamp=self._now(),
                session_id=record.session_id,
                device_info=record.device_info,
            )
        )
        return record

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        session_id = self._check_component(session_id, "Session ID")
        keys = await self._scan(session_id)
        if not keys:
            return None
        if len(keys) > 1:
            self.logger.error(
                "session_ambiguous", session_ref=token_ref(session_id), matches=len(keys)
            )
            raise AmbiguousSession("Multiple sessions found with same ID")
        raw = await self.store.get(keys[0])
        if raw is None:
            # Expired or revoked between scan and read
            return None
        return self._decode(keys[0], raw)

    async def validate_session(self, session_id: str) -> bool:
        record = await self.get_session(session_id)
        if record is None:
            return False
        missing = record.missing_fields()
        if missing:
            self.logger.error(
                "session_missing_fields",
                session_ref=token_ref(session_id),
                missing=missing,
            )
            raise SessionValidationError(
                "Session is missing required fields", detail={"missing": missing}
            )
        if record.expires_at <= self._now():
            return False
        return record.is_active

    async def update_activity(self, session_id: str) -> SessionRecord:
        """Stamp ``last_activity`` without extending the session lifetime."""
        record = await self.get_session(session_id)
        if record is None or not record.user_id:
            raise SessionNotFound("Session not found")
        key = record.key
        remaining = await self.store.ttl(key)
        if remaining == TTL_KEY_MISSING:
            raise SessionNotFound("Session not found")
        if remaining <= 0 and record.expires_at:
            remaining = int((record.expires_at - self._now()).total_seconds())
        if remaining <= 0:
            raise SessionNotFound("Session not found")
        record.last_activity = self._now()
        await self.store.set(key, record.to_json(), remaining)
        return record

    async def get_user_sessions(self, user_id: str) -> List[SessionRecord]:
        user_id = self._check_component(user_id, "User ID")
        sessions: List[SessionRecord] = []
        for key in await self.store.keys(session_key(user_id, "*")):
            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                sessions.append(SessionRecord.from_json(raw))
            except (ValueError, TypeError, KeyError) as exc:
                self.logger.warning(
                    "session_parse_failed", user_id=user_id, error=str(exc)
                )
        sessions.sort(
            key=lambda s: s.last_activity or s.issued_at or _EPOCH, reverse=True
        )
        return sessions

    async def revoke_session(self, session_id: str) -> bool:
        session_id = self._check_component(session_id, "Session ID")
        keys = await self._scan(session_id)
        if not keys:
            return False
        if len(keys) > 1:
            raise AmbiguousSession("Multiple sessions found with same ID")
        # Works from the key alone so corrupt records can still be revoked
        key = keys[0]
        user_id = key.split(":")[1]
        if not await self.store.delete(key):
            return False
        self.logger.info(
            "session_revoked", user_id=user_id, session_ref=token_ref(session_id)
        )
        await self._emit(
            SecurityEvent(
                type=security.SESSION_REVOKED,
                user_id=user_id,
                timestamp=self._now(),
                session_id=session_id,
            )
        )
        return True

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        user_id = self._check_component(user_id, "User ID")
        removed = 0
        for key in await self.store.keys(session_key(user_id, "*")):
            try:
                removed += await self.store.delete(key)
            except StoreError as exc:
                self.logger.warning(
                    "session_revoke_failed", user_id=user_id, error=str(exc)
                )
        if removed:
            self.logger.info("sessions_revoked", user_id=user_id, count=removed)
            await self._emit(
                SecurityEvent(
                    type=security.BULK_SESSION_REVOKED,
                    user_id=user_id,
                    timestamp=self._now(),
                    session_count=removed,
                )
            )
        return removed

    # Refresh-token vocabulary over the same records
    async def revoke_refresh_token(self, token: str) -> bool:
        return await self.revoke_session(token)

    async def revoke_all_user_tokens(self, user_id: str) -> int:
        return await self.revoke_all_user_sessions(user_id)

    async def issue_token_pair(
        self, identity: Identity, device_info: Optional[DeviceInfo] = None
    ) -> TokenPair:
        """Open a session for ``identity`` and return its first token pair."""
        access_token = issue_access_token(identity, self.jwt_config, now=self._clock)
        record = await self.create_session(identity, device_info)
        return TokenPair(
            access_token=access_token,
            refresh_token=record.session_id,
            expires_at=self._now() + self.jwt_config.access_token_ttl,
        )

    async def refresh_tokens(self, presented_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old one."""
        if not is_refresh_token_format(presented_token):
            raise InvalidRefreshTokenFormat("Invalid refresh token format")
        ref = token_ref(presented_token)

        keys = await self._scan(presented_token)
        if not keys:
            self.logger.info("refresh_token_unknown", session_ref=ref)
            raise InvalidRefreshToken("Invalid refresh token")
        if len(keys) > 1:
            self.logger.error("refresh_token_ambiguous", session_ref=ref, matches=len(keys))
            raise AmbiguousRefreshToken("Multiple tokens found")
        key = keys[0]

        raw = await self.store.get(key)
        if raw is None:
            raise InvalidRefreshToken("Invalid refresh token")
        try:
            record = SessionRecord.from_json(raw)
        except (ValueError, TypeError, KeyError) as exc:
            self.logger.error("refresh_token_corrupt", session_ref=ref, error=str(exc))
            raise InvalidRefreshToken("Invalid refresh token") from exc

        if record.expires_at and record.expires_at <= self._now():
            await self.store.delete(key)
            self.logger.info("refresh_token_expired", user_id=record.user_id, session_ref=ref)
            if record.user_id:
                await self._emit(
                    SecurityEvent(
                        type=security.REFRESH_TOKEN_EXPIRED,
                        user_id=record.user_id,
                        timestamp=self._now(),
                        session_id=presented_token,
                    )
                )
            raise RefreshTokenExpired("Refresh token expired")

        identity = record.user_snapshot
        if not record.is_active or identity is None or not record.user_id:
            raise InvalidRefreshToken("Invalid refresh token")

        # Only one concurrent caller can claim the record
        if await self.store.getdel(key) is None:
            self.logger.warning("refresh_token_claim_lost", user_id=record.user_id, session_ref=ref)
            raise InvalidRefreshToken("Invalid refresh token")

        access_token = issue_access_token(identity, self.jwt_config, now=self._clock)
        # The consumed record is gone, so the replacement fits under the cap
        new_record = await self._write(
            record.user_id, snapshot=identity, device_info=record.device_info
        )
        self.logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            session_ref=ref,
            new_session_ref=token_ref(new_record.session_id),
        )
        await self._emit(
            SecurityEvent(
                type=security.TOKEN_REFRESHED,
                user_id=record.user_id,
                timestamp=self._now(),
                session_id=new_record.session_id,
                device_info=new_record.device_info,
                metadata={"previous_session_id": presented_token},
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=new_record.session_id,
            expires_at=self._now() + self.jwt_config.access_token_ttl,
        )


__all__ = [
    "SessionRegistry",
    "REFRESH_TOKEN_PATTERN",
    "is_refresh_token_format",
    "token_ref",
]
