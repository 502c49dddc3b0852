from __future__ import annotations

import threading
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Callable, Dict, List, Optional, Tuple

from musicez.storage.common import TTL_KEY_MISSING, TTL_NO_EXPIRY


class MemoryTTLStore:
    """In-process stand-in for Redis used in tests and single-node dev.

    Keys expire lazily against the injected clock, so tests can move time
    forward without sleeping.
    """

    def __init__(self, *, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))
        # key -> (value, expires_at epoch seconds or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _timestamp(self) -> float:
        return self._now().timestamp()

    def _live_entry(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._timestamp():
            self._data.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_entry(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            expires_at = self._timestamp() + max(1, int(ttl_seconds))
            self._data[key] = (value, expires_at)

    async def set_persistent(self, key: str, value: str) -> None:
        """Write a key without expiry; mirrors a bare Redis SET."""
        with self._lock:
            self._data[key] = (value, None)

    async def delete(self, key: str) -> int:
        with self._lock:
            if self._live_entry(key) is None:
                return 0
            self._data.pop(key, None)
            return 1

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            self._data.pop(key, None)
            return entry[0]

    async def keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [
                key
                for key in list(self._data.keys())
                if fnmatchcase(key, pattern) and self._live_entry(key) is not None
            ]

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return TTL_KEY_MISSING
            _, expires_at = entry
            if expires_at is None:
                return TTL_NO_EXPIRY
            return max(0, int(expires_at - self._timestamp()))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
