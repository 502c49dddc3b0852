from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; ``None`` passes through, garbage raises ValueError."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected ISO timestamp, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Identity:
    """User identity supplied by the account store at login/registration."""

    id: str
    email: str
    name: Optional[str] = None
    email_verified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            email_verified=bool(data.get("email_verified", False)),
        )


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_id: Optional[str] = None
    fingerprint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["DeviceInfo"]:
        if not data:
            return None
        if not isinstance(data, dict):
            raise ValueError("device_info must be an object")
        return cls(
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            device_id=data.get("device_id"),
            fingerprint=data.get("fingerprint"),
        )


@dataclass
class SessionRecord:
    """A live login on one device; ``session_id`` doubles as the refresh token.

    Required fields are typed Optional so a structurally incomplete record can
    still be loaded and reported as invalid rather than as corrupt.
    """

    session_id: Optional[str]
    user_id: Optional[str]
    issued_at: Optional[datetime]
    expires_at: Optional[datetime]
    last_activity: Optional[datetime] = None
    is_active: bool = True
    device_info: Optional[DeviceInfo] = None
    user_snapshot: Optional[Identity] = None

    REQUIRED_FIELDS = ("session_id", "user_id", "issued_at", "expires_at")

    @property
    def refresh_token(self) -> Optional[str]:
        return self.session_id

    @property
    def key(self) -> str:
        return session_key(self.user_id or "", self.session_id or "")

    def missing_fields(self) -> list[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]

    def to_json(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "user_id": self.user_id,
                "issued_at": _iso(self.issued_at),
                "expires_at": _iso(self.expires_at),
                "last_activity": _iso(self.last_activity),
                "is_active": self.is_active,
                "device_info": self.device_info.to_dict() if self.device_info else None,
                "user_snapshot": self.user_snapshot.to_dict() if self.user_snapshot else None,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        """Decode a stored payload.

        Raises ValueError (or a subclass) for undecodable payloads and wrongly
        typed values; missing fields are tolerated.
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("session payload is not an object")
        snapshot_raw = data.get("user_snapshot")
        snapshot = None
        if snapshot_raw:
            try:
                snapshot = Identity.from_dict(snapshot_raw)
            except (KeyError, TypeError, AttributeError) as exc:
                raise ValueError(f"invalid user_snapshot: {exc}") from exc
        return cls(
            session_id=data.get("session_id"),
            user_id=data.get("user_id"),
            issued_at=_parse_dt(data.get("issued_at")),
            expires_at=_parse_dt(data.get("expires_at")),
            last_activity=_parse_dt(data.get("last_activity")),
            is_active=bool(data.get("is_active", True)),
            device_info=DeviceInfo.from_dict(data.get("device_info")),
            user_snapshot=snapshot,
        )


@dataclass
class SecurityEvent:
    type: str
    user_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: Optional[str] = None
    session_count: Optional[int] = None
    device_info: Optional[DeviceInfo] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "user_id": self.user_id,
                "timestamp": _iso(self.timestamp),
                "session_id": self.session_id,
                "session_count": self.session_count,
                "device_info": self.device_info.to_dict() if self.device_info else None,
                "metadata": self.metadata,
            },
            separators=(",", ":"),
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "SecurityEvent":
        data = json.loads(raw)
        return cls(
            type=data["type"],
            user_id=data["user_id"],
            timestamp=_parse_dt(data.get("timestamp")) or datetime.now(timezone.utc),
            session_id=data.get("session_id"),
            session_count=data.get("session_count"),
            device_info=DeviceInfo.from_dict(data.get("device_info")),
            metadata=data.get("metadata") or {},
        )


@dataclass
class AccessTokenClaims:
    subject_id: str
    email: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str
    name: Optional[str] = None
    email_verified: bool = False

    def to_identity(self) -> Identity:
        return Identity(
            id=self.subject_id,
            email=self.email,
            name=self.name,
            email_verified=self.email_verified,
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": _iso(self.expires_at) or "",
        }


def session_key(user_id: str, session_id: str) -> str:
    return f"session:{user_id}:{session_id}"


__all__ = [
    "Identity",
    "DeviceInfo",
    "SessionRecord",
    "SecurityEvent",
    "AccessTokenClaims",
    "TokenPair",
    "session_key",
]
