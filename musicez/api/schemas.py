from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from musicez.storage.models import SessionRecord, TokenPair


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is the stable ``error_code`` of the failure."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class DeviceInfoBody(BaseModel):
    user_agent: Optional[str] = Field(default=None, max_length=512)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    device_id: Optional[str] = Field(default=None, max_length=128)
    fingerprint: Optional[str] = Field(default=None, max_length=256)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=128)
    device_info: Optional[DeviceInfoBody] = None


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=128)


class TokensBody(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokensBody":
        return cls(**pair.to_dict())


class TokensResponse(BaseModel):
    tokens: TokensBody


class SessionSummary(BaseModel):
    """Session listing entry. The session id is omitted since it is a credential."""

    issued_at: Optional[str] = None
    last_activity: Optional[str] = None
    expires_at: Optional[str] = None
    is_active: bool = True
    device_id: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionSummary":
        device = record.device_info
        return cls(
            issued_at=record.issued_at.isoformat() if record.issued_at else None,
            last_activity=record.last_activity.isoformat() if record.last_activity else None,
            expires_at=record.expires_at.isoformat() if record.expires_at else None,
            is_active=record.is_active,
            device_id=device.device_id if device else None,
            user_agent=device.user_agent if device else None,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionSummary]
