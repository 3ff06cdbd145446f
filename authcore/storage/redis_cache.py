from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for token revocation and rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: the first hit in a window sets its expiry, later hits only
    # increment. Returns the post-increment count and the seconds left.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local cost = tonumber(ARGV[2])

local count = redis.call('INCRBY', key, cost)
if count == cost then
  redis.call('EXPIRE', key, window)
end
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so caller-supplied text cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def consume_rate_limit(
        self, key: str, window_seconds: int, *, cost: int = 1
    ) -> Tuple[int, int]:
        """Atomically add ``cost`` to the current window.

        Returns ``(count, seconds_until_reset)``.
        """
        count, ttl = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[max(1, int(window_seconds)), max(1, int(cost))],
        )
        return int(count), max(0, int(ttl))

    async def rate_limit_status(self, key: str) -> Tuple[int, int]:
        """Return ``(count, seconds_until_reset)`` without consuming."""
        safe_key = self._normalize_rate_key(key)
        pipe = self.client.pipeline()
        pipe.get(safe_key)
        pipe.ttl(safe_key)
        raw_count, ttl = await pipe.execute()
        if raw_count is None:
            return 0, 0
        return int(raw_count), max(0, int(ttl))

    async def reset_rate_limit(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add a token id to the revocation set for its remaining lifetime."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:revoked:{jti}", "1", ex=int(ttl_seconds))

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:revoked:{jti}"))

    async def close(self) -> None:
        """Close the connection pool. Call on shutdown or runtime reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
