from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.service.errors import RateLimited
from authcore.storage.models import utcnow
from authcore.storage.redis_cache import RedisCache

_MAX_LOCAL_KEYS = 10000


@dataclass(frozen=True)
class RateLimitPolicy:
    points: int
    duration_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """Fixed-window counters keyed by subject (IP, user id, ...).

    Uses Redis when a cache is configured; otherwise, or when Redis errors,
    falls back to in-process counters. Losing counters means less limiting,
    never a rejected request that should have passed.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_local_keys: int = _MAX_LOCAL_KEYS,
    ) -> None:
        self.cache = cache
        self.clock = clock
        self.max_local_keys = max_local_keys
        self._local: Dict[str, Tuple[int, datetime, int]] = {}
        self._local_lock = threading.Lock()
        self.logger = get_logger(__name__)

    async def consume(
        self, key: str, policy: RateLimitPolicy, *, cost: int = 1
    ) -> RateLimitDecision:
        """Count one attempt; raise RateLimited once the window is exhausted."""
        decision = await self.hit(key, policy, cost=cost)
        if not decision.allowed:
            self.logger.warning(
                "rate_limited",
                key=key,
                limit=policy.points,
                retry_after=decision.retry_after,
            )
            raise RateLimited(decision.retry_after)
        return decision

    async def hit(
        self, key: str, policy: RateLimitPolicy, *, cost: int = 1
    ) -> RateLimitDecision:
        """Count one attempt and report whether it was within the policy."""
        cost = max(1, int(cost))
        count, ttl = None, 0
        if self.cache is not None:
            try:
                count, ttl = await self.cache.consume_rate_limit(
                    key, policy.duration_seconds, cost=cost
                )
            except RedisError as exc:
                self.logger.warning(
                    "rate_limit_cache_unavailable", key=key, error=str(exc)
                )
        if count is None:
            count, ttl = self._local_hit(key, policy, cost)
        allowed = count <= policy.points
        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=policy.points,
            retry_after=0 if allowed else max(1, ttl),
        )

    async def blocked_for(self, key: str, policy: RateLimitPolicy) -> int:
        """Seconds until ``key`` may try again, or 0 if it is not blocked."""
        count, ttl = None, 0
        if self.cache is not None:
            try:
                count, ttl = await self.cache.rate_limit_status(key)
            except RedisError as exc:
                self.logger.warning(
                    "rate_limit_cache_unavailable", key=key, error=str(exc)
                )
        if count is None:
            count, ttl = self._local_status(key)
        if count >= policy.points:
            return max(1, ttl)
        return 0

    async def reset(self, key: str) -> None:
        if self.cache is not None:
            try:
                await self.cache.reset_rate_limit(key)
            except RedisError as exc:
                self.logger.warning(
                    "rate_limit_cache_unavailable", key=key, error=str(exc)
                )
        with self._local_lock:
            self._local.pop(key, None)

    # ------------------------------------------------------------------
    # in-process fallback
    # ------------------------------------------------------------------
    def _local_hit(
        self, key: str, policy: RateLimitPolicy, cost: int
    ) -> Tuple[int, int]:
        now = self.clock()
        with self._local_lock:
            entry = self._local.get(key)
            if entry is None or now >= entry[1] + timedelta(seconds=entry[2]):
                if key not in self._local and len(self._local) >= self.max_local_keys:
                    self._prune_locked(now)
                count, window_start = cost, now
            else:
                count, window_start = entry[0] + cost, entry[1]
            self._local[key] = (count, window_start, policy.duration_seconds)
        window_end = window_start + timedelta(seconds=policy.duration_seconds)
        return count, self._seconds_until(window_end, now)

    def _local_status(self, key: str) -> Tuple[int, int]:
        now = self.clock()
        with self._local_lock:
            entry = self._local.get(key)
        if entry is None:
            return 0, 0
        window_end = entry[1] + timedelta(seconds=entry[2])
        if now >= window_end:
            return 0, 0
        return entry[0], self._seconds_until(window_end, now)

    def _prune_locked(self, now: datetime) -> None:
        expired = [
            k
            for k, (_, start, duration) in self._local.items()
            if now >= start + timedelta(seconds=duration)
        ]
        for k in expired:
            del self._local[k]
        if len(self._local) >= self.max_local_keys:
            oldest = sorted(self._local.items(), key=lambda item: item[1][1])
            for k, _ in oldest[: max(1, self.max_local_keys // 10)]:
                del self._local[k]

    @staticmethod
    def _seconds_until(when: datetime, now: datetime) -> int:
        return max(0, math.ceil((when - now).total_seconds()))
