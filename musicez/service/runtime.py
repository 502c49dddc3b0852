from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from musicez.config import Settings, get_settings, parse_duration, reset_settings_cache
from musicez.logging import get_logger
from musicez.service.auth import AuthService
from musicez.service.cleanup import CleanupSweeper, CleanupWorker
from musicez.service.security import SecurityEventLog, SecurityMonitor
from musicez.service.sessions import SessionRegistry
from musicez.storage.common import TTLStore
from musicez.storage.memory import MemoryTTLStore
from musicez.storage.redis_cache import RedisTTLStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the store and every identity service with explicit dependencies.

    Nothing here holds a back-reference: the event log is shared by the
    registry and the monitor, and the monitor reads sessions through the
    registry.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[TTLStore] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.jwt_config = self.settings.jwt_config()
        self.session_config = self.settings.session_config()
        self.store: TTLStore = store if store is not None else self._build_store()

        self.events = SecurityEventLog(self.store)
        self.sessions = SessionRegistry(
            self.store,
            self.jwt_config,
            self.session_config,
            events=self.events,
            now=now,
        )
        self.monitor = SecurityMonitor(self.sessions, self.events, now=now)
        self.auth = AuthService(
            self.sessions,
            self.jwt_config,
            self.session_config,
            monitor=self.monitor,
            now=now,
        )
        self.sweeper = CleanupSweeper(self.store, now=now)
        self.cleanup_worker = CleanupWorker(
            self.sweeper,
            interval=parse_duration(self.session_config.cleanup_interval),
            inactive_threshold=parse_duration(self.session_config.inactive_threshold),
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            max_sessions_per_user=self.session_config.max_sessions_per_user,
            cleanup_enabled=self.settings.session_cleanup_enabled,
        )

    def _build_store(self) -> TTLStore:
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryTTLStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisTTLStore(self.settings.redis_url)
                store.verify_connection()
                logger.info("runtime_store_initialized", store_type="redis")
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions live in "
                "process memory and are lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryTTLStore()

    async def startup(self) -> None:
        if self.settings.session_cleanup_enabled:
            await self.cleanup_worker.start()

    async def close(self) -> None:
        await self.cleanup_worker.stop()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.store.close())
            except RuntimeError:
                asyncio.run(runtime.store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
