from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from musicez.logging import get_logger
from musicez.service.errors import AuthenticationError
from musicez.service.runtime import Runtime, get_runtime
from musicez.storage.models import Identity

logger = get_logger(__name__)


def get_app_runtime(request: Request) -> Runtime:
    """Runtime attached to the app, falling back to the process singleton."""
    runtime = getattr(request.app.state, "runtime", None)
    return runtime if runtime is not None else get_runtime()


async def get_current_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Identity:
    runtime = get_app_runtime(request)
    return runtime.auth.authenticate(authorization)


async def get_optional_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[Identity]:
    """Like get_current_identity, but an absent or rejected token yields ``None``.

    For routes that serve anonymous callers too; the business routers mount it.
    """
    if not authorization:
        return None
    runtime = get_app_runtime(request)
    try:
        return runtime.auth.authenticate(authorization)
    except AuthenticationError as exc:
        logger.debug(
            "optional_auth_rejected",
            error_code=exc.error_code,
            path=request.url.path,
        )
        return None


__all__ = ["get_app_runtime", "get_current_identity", "get_optional_identity"]
