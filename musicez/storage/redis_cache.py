from __future__ import annotations

import functools
from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from musicez.logging import get_logger
from musicez.storage.errors import StoreError

logger = get_logger(__name__)


def _translate_errors(fn):
    """Surface redis-py failures as StoreError so callers see one store error type."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except RedisError as exc:
            logger.warning(
                "redis_command_failed",
                command=fn.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(
                f"store command {fn.__name__} failed",
                {"error_type": type(exc).__name__},
            ) from exc

    return wrapper


class RedisTTLStore:
    """Thin Redis wrapper implementing the TTL-keyed store contract."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    DEFAULT_SCAN_COUNT = 500

    # GETDEL fallback for servers older than 6.2
    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        scan_count: int = DEFAULT_SCAN_COUNT,
    ):
        self.redis_url = redis_url
        self.scan_count = scan_count
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._getdel_fallback = self.client.register_script(self._GETDEL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_translate_errors
    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    @_translate_errors
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        # Redis rejects non-positive expiries
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    @_translate_errors
    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    @_translate_errors
    async def getdel(self, key: str) -> Optional[str]:
        try:
            return await self.client.getdel(key)
        except ResponseError:
            return await self._getdel_fallback(keys=[key])

    @_translate_errors
    async def keys(self, pattern: str) -> List[str]:
        # SCAN rather than KEYS so large keyspaces do not block the server;
        # SCAN may yield a key more than once.
        found = [
            key
            async for key in self.client.scan_iter(match=pattern, count=self.scan_count)
        ]
        return list(dict.fromkeys(found))

    @_translate_errors
    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    @_translate_errors
    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
