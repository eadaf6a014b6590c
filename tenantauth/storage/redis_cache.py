from __future__ import annotations

from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for fixed-window rate-limit counters."""

    # Atomic increment; a key without a TTL always gets one, so a counter
    # can never outlive its window
    _INCR_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_window = self.client.register_script(self._INCR_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment ``key`` and return ``(count, seconds until the window resets)``."""
        count, ttl = await self._incr_window(keys=[key], args=[window_seconds])
        return int(count), int(ttl)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable API.

    Used in test mode so the client is not bound to one pytest event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_window = self._sync_client.register_script(RedisCache._INCR_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = self._incr_window(keys=[key], args=[window_seconds])
        return int(count), int(ttl)

    async def close(self) -> None:
        self._sync_client.close()
