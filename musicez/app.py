from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from musicez.api.error_handling import (
    register_correlation_middleware,
    register_exception_handlers,
)
from musicez.api.routes import router
from musicez.logging import get_logger
from musicez.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the auth API; ``runtime`` defaults to the process singleton at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = get_runtime()
        try:
            await app.state.runtime.startup()
        except Exception as exc:
            logger.error("startup_cleanup_worker_failed", error=str(exc))

        yield

        try:
            await app.state.runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="MusicEZ Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    register_correlation_middleware(app)
    register_exception_handlers(app)
    app.include_router(router)
    return app


__all__ = ["create_app"]
