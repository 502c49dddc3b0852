"""Contract shared by the Redis and in-memory TTL-keyed stores."""

from __future__ import annotations

from typing import List, Optional, Protocol

# Values returned by ``ttl`` for keys without a positive remaining lifetime,
# matching the Redis TTL command.
TTL_KEY_MISSING = -2
TTL_NO_EXPIRY = -1


class TTLStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and remove a key; only one concurrent caller wins."""
        ...

    async def keys(self, pattern: str) -> List[str]:
        """Glob-style key scan. O(n) in the total key count."""
        ...

    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds, or TTL_KEY_MISSING / TTL_NO_EXPIRY."""
        ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


_GLOB_CHARS = frozenset("*?[]\\")


def is_safe_key_component(value: str) -> bool:
    """True when ``value`` can be embedded in a key without breaking patterns."""
    return bool(value) and ":" not in value and not (_GLOB_CHARS & set(value))


__all__ = ["TTLStore", "TTL_KEY_MISSING", "TTL_NO_EXPIRY", "is_safe_key_component"]
