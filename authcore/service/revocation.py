from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.service.errors import StoreUnavailable
from authcore.storage.models import utcnow
from authcore.storage.redis_cache import RedisCache


class RevocationRegistry:
    """Set of revoked token ids, each kept only as long as the token could live.

    A lookup that cannot reach the cache raises StoreUnavailable; it never
    answers "not revoked" on failure.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.clock = clock
        self._local: Dict[str, datetime] = {}
        self._local_lock = threading.Lock()
        self.logger = get_logger(__name__)

    async def revoke(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            # already expired; verification rejects it anyway
            return
        if self.cache is not None:
            try:
                await self.cache.revoke_token(token_id, ttl_seconds)
            except RedisError as exc:
                self.logger.error("token_revoke_failed", token_id=token_id, error=str(exc))
                raise StoreUnavailable(detail={"backend": "redis"}) from exc
            return
        now = self.clock()
        with self._local_lock:
            self._prune_locked(now)
            self._local[token_id] = now + timedelta(seconds=ttl_seconds)

    async def is_revoked(self, token_id: str) -> bool:
        if self.cache is not None:
            try:
                return await self.cache.is_token_revoked(token_id)
            except RedisError as exc:
                self.logger.error(
                    "token_revocation_check_failed", token_id=token_id, error=str(exc)
                )
                raise StoreUnavailable(detail={"backend": "redis"}) from exc
        now = self.clock()
        with self._local_lock:
            expires_at = self._local.get(token_id)
            if expires_at is None:
                return False
            if now >= expires_at:
                del self._local[token_id]
                return False
            return True

    def _prune_locked(self, now: datetime) -> None:
        expired = [jti for jti, until in self._local.items() if now >= until]
        for jti in expired:
            del self._local[jti]
