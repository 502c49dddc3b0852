from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from musicez.api.deps import get_app_runtime, get_current_identity
from musicez.api.schemas import (
    DeviceInfoBody,
    Envelope,
    LogoutRequest,
    RefreshRequest,
    SessionListResponse,
    SessionSummary,
    TokensBody,
    TokensResponse,
)
from musicez.storage.models import DeviceInfo, Identity

router = APIRouter(prefix="/auth")


def _device_info(request: Request, body: Optional[DeviceInfoBody]) -> Optional[DeviceInfo]:
    data = body.model_dump() if body else {}
    if not data.get("user_agent"):
        data["user_agent"] = request.headers.get("user-agent")
    if not data.get("ip_address") and request.client:
        data["ip_address"] = request.client.host
    return DeviceInfo.from_dict({k: v for k, v in data.items() if v})


@router.post("/refresh", response_model=Envelope)
async def refresh_tokens(body: RefreshRequest, request: Request) -> Envelope:
    runtime = get_app_runtime(request)
    pair = await runtime.auth.refresh(
        body.refresh_token, _device_info(request, body.device_info)
    )
    return Envelope(
        status="ok", data=TokensResponse(tokens=TokensBody.from_pair(pair)).model_dump()
    )


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest, request: Request) -> Envelope:
    runtime = get_app_runtime(request)
    revoked = await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/logout-all", response_model=Envelope)
async def logout_all(
    request: Request, identity: Identity = Depends(get_current_identity)
) -> Envelope:
    runtime = get_app_runtime(request)
    count = await runtime.auth.logout_all(identity.id)
    return Envelope(status="ok", data={"revoked": count})


@router.get("/sessions", response_model=Envelope)
async def list_sessions(
    request: Request, identity: Identity = Depends(get_current_identity)
) -> Envelope:
    runtime = get_app_runtime(request)
    records = await runtime.sessions.get_user_sessions(identity.id)
    body = SessionListResponse(sessions=[SessionSummary.from_record(r) for r in records])
    return Envelope(status="ok", data=body.model_dump())


@router.get("/me", response_model=Envelope)
async def whoami(identity: Identity = Depends(get_current_identity)) -> Envelope:
    return Envelope(status="ok", data={"user": identity.to_dict()})
