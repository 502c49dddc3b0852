"""Best-effort reaping of expired and idle session records."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from musicez.logging import get_logger
from musicez.storage.common import TTL_KEY_MISSING, TTL_NO_EXPIRY, TTLStore
from musicez.storage.errors import StoreError
from musicez.storage.models import SessionRecord

logger = get_logger(__name__)

SESSION_PATTERN = "session:*"
MAX_BACKOFF_SECONDS = 300


def _as_timedelta(threshold: Union[int, float, timedelta]) -> timedelta:
    if isinstance(threshold, timedelta):
        return threshold
    return timedelta(milliseconds=threshold)


class CleanupSweeper:
    """Both passes swallow store failures: a missed sweep is retried next run."""

    def __init__(
        self,
        store: TTLStore,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = now or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    async def _scan(self) -> Optional[list[str]]:
        try:
            return await self.store.keys(SESSION_PATTERN)
        except StoreError as exc:
            logger.error("session_cleanup_scan_failed", error=str(exc))
            return None

    async def _expire_unbounded(self, key: str) -> int:
        """Handle a record written without a TTL by enforcing its ``expires_at``."""
        raw = await self.store.get(key)
        if raw is None:
            return 0
        record = SessionRecord.from_json(raw)
        if record.expires_at is None or record.expires_at <= self._now():
            return await self.store.delete(key)
        remaining = int((record.expires_at - self._now()).total_seconds())
        await self.store.set(key, raw, remaining)
        return 0

    async def cleanup_expired_sessions(self) -> int:
        keys = await self._scan()
        if keys is None:
            return 0
        cleaned = 0
        for key in keys:
            try:
                remaining = await self.store.ttl(key)
                if remaining == TTL_KEY_MISSING:
                    cleaned += await self.store.delete(key)
                elif remaining == TTL_NO_EXPIRY:
                    cleaned += await self._expire_unbounded(key)
            except (StoreError, ValueError, TypeError) as exc:
                logger.warning("session_cleanup_key_failed", error=str(exc))
        if cleaned:
            logger.info("expired_sessions_cleaned", count=cleaned)
        return cleaned

    async def cleanup_inactive_sessions(
        self, threshold: Union[int, float, timedelta]
    ) -> int:
        """Delete records idle for longer than ``threshold`` (ms or timedelta)."""
        cutoff = self._now() - _as_timedelta(threshold)
        keys = await self._scan()
        if keys is None:
            return 0
        cleaned = 0
        for key in keys:
            try:
                raw = await self.store.get(key)
                if raw is None:
                    continue
                record = SessionRecord.from_json(raw)
                last_seen = record.last_activity or record.issued_at
                if last_seen is not None and last_seen < cutoff:
                    cleaned += await self.store.delete(key)
            except (StoreError, ValueError, TypeError) as exc:
                logger.warning("session_cleanup_key_failed", error=str(exc))
        if cleaned:
            logger.info("inactive_sessions_cleaned", count=cleaned)
        return cleaned


class CleanupWorker:
    """Background loop that runs both sweeper passes on an interval."""

    def __init__(
        self,
        sweeper: CleanupSweeper,
        *,
        interval: timedelta,
        inactive_threshold: timedelta,
    ) -> None:
        self.sweeper = sweeper
        self.interval = interval
        self.inactive_threshold = inactive_threshold
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_cleanup_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "session_cleanup_started", interval_seconds=self.interval.total_seconds()
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_cleanup_stopped")

    async def run_once(self) -> tuple[int, int]:
        expired = await self.sweeper.cleanup_expired_sessions()
        inactive = await self.sweeper.cleanup_inactive_sessions(self.inactive_threshold)
        return expired, inactive

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        interval = self.interval.total_seconds()
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_cleanup_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "session_cleanup_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(interval)


__all__ = ["CleanupSweeper", "CleanupWorker"]
