"""Security event log and heuristic device/activity checks.

Detection is advisory: callers decide whether a positive result should block
a login, require re-authentication, or only be audited.
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, List, Optional

from musicez.logging import get_logger
from musicez.storage.common import TTLStore
from musicez.storage.models import DeviceInfo, SecurityEvent

if TYPE_CHECKING:
    from musicez.service.sessions import SessionRegistry

logger = get_logger(__name__)

SECURITY_EVENT_TTL_SECONDS = 7 * 24 * 60 * 60
RAPID_SESSION_WINDOW = timedelta(minutes=5)
RAPID_SESSION_LIMIT = 5

SESSION_CREATED = "session_created"
SESSION_REVOKED = "session_revoked"
BULK_SESSION_REVOKED = "bulk_session_revoked"
TOKEN_REFRESHED = "token_refreshed"
REFRESH_TOKEN_EXPIRED = "refresh_token_expired"
DEVICE_MISMATCH = "device_mismatch"

_AUTOMATION_AGENT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"bot", r"crawler", r"spider", r"scraper", r"suspicious")
]
_IPV4_PATTERN = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")


def _network_prefix(ip: str) -> str:
    return ".".join(ip.split(".")[:2])


def _is_loopback(ip: str) -> bool:
    return ip.startswith("127.")


class SecurityEventLog:
    """Short-retention, write-once audit log kept in the TTL store."""

    def __init__(
        self,
        store: TTLStore,
        *,
        retention_seconds: int = SECURITY_EVENT_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.retention_seconds = retention_seconds

    async def log_security_event(self, event: SecurityEvent) -> None:
        """Persist an event. Never raises: audit logging must not abort the caller."""
        millis = int(event.timestamp.timestamp() * 1000)
        key = f"security_log:{event.user_id}:{millis}:{secrets.token_hex(4)}"
        try:
            await self.store.set(key, event.to_json(), self.retention_seconds)
        except Exception as exc:
            logger.error(
                "security_event_log_failed",
                event_type=event.type,
                user_id=event.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def get_security_events(self, user_id: str) -> List[SecurityEvent]:
        keys = await self.store.keys(f"security_log:{user_id}:*")
        events: List[SecurityEvent] = []
        for key in keys:
            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                events.append(SecurityEvent.from_json(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("security_event_corrupt", key=key)
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events


class SecurityMonitor:
    def __init__(
        self,
        registry: "SessionRegistry",
        events: SecurityEventLog,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.registry = registry
        self.events = events
        self._clock = now or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    async def log_security_event(self, event: SecurityEvent) -> None:
        await self.events.log_security_event(event)

    async def get_security_events(self, user_id: str) -> List[SecurityEvent]:
        return await self.events.get_security_events(user_id)

    async def detect_device_change(
        self, session_id: str, current_device: DeviceInfo
    ) -> bool:
        session = await self.registry.get_session(session_id)
        if not session or not session.device_info:
            return False
        original = session.device_info
        return (
            original.device_id != current_device.device_id
            or original.ip_address != current_device.ip_address
            or original.user_agent != current_device.user_agent
        )

    async def detect_suspicious_activity(
        self, user_id: str, device_info: Optional[DeviceInfo] = None
    ) -> bool:
        sessions = await self.registry.get_user_sessions(user_id)

        if device_info:
            agent = device_info.user_agent
            if agent and any(p.search(agent) for p in _AUTOMATION_AGENT_PATTERNS):
                logger.info("suspicious_user_agent", user_id=user_id)
                return True

            ip = device_info.ip_address
            if ip:
                if not _IPV4_PATTERN.match(ip):
                    logger.info("suspicious_ip_format", user_id=user_id)
                    return True
                # Sessions are sorted most recent activity first
                latest = sessions[0] if sessions else None
                last_ip = (
                    latest.device_info.ip_address
                    if latest and latest.device_info
                    else None
                )
                if (
                    last_ip
                    and _network_prefix(ip) != _network_prefix(last_ip)
                    and not _is_loopback(ip)
                    and not _is_loopback(last_ip)
                ):
                    logger.info("suspicious_network_change", user_id=user_id)
                    return True

        window_start = self._now() - RAPID_SESSION_WINDOW
        recent = [s for s in sessions if s.issued_at and s.issued_at > window_start]
        if len(recent) > RAPID_SESSION_LIMIT:
            logger.info("suspicious_session_burst", user_id=user_id, recent=len(recent))
            return True
        return False


__all__ = [
    "SecurityEventLog",
    "SecurityMonitor",
    "SECURITY_EVENT_TTL_SECONDS",
    "SESSION_CREATED",
    "SESSION_REVOKED",
    "BULK_SESSION_REVOKED",
    "TOKEN_REFRESHED",
    "REFRESH_TOKEN_EXPIRED",
    "DEVICE_MISMATCH",
]
