"""Tests for fixed-window rate limiting, local and Redis-backed."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authcore.service.errors import RateLimited
from authcore.service.rate_limit import RateLimitPolicy, RateLimiter

LOGIN = RateLimitPolicy(points=5, duration_seconds=900)


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


async def test_allows_up_to_the_limit(limiter):
    for expected in range(1, 6):
        decision = await limiter.consume("login:1.2.3.4", LOGIN)
        assert decision.count == expected
    assert decision.remaining == 0


async def test_rejects_once_window_is_exhausted(limiter, clock):
    for _ in range(5):
        await limiter.consume("login:1.2.3.4", LOGIN)

    clock.advance(seconds=100)
    with pytest.raises(RateLimited) as excinfo:
        await limiter.consume("login:1.2.3.4", LOGIN)
    assert excinfo.value.retry_after == 800
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail == {"retry_after": 800}


async def test_window_resets_after_duration(limiter, clock):
    for _ in range(5):
        await limiter.consume("login:1.2.3.4", LOGIN)

    clock.advance(seconds=900)
    decision = await limiter.consume("login:1.2.3.4", LOGIN)
    assert decision.count == 1


async def test_keys_are_independent(limiter):
    for _ in range(5):
        await limiter.consume("login:1.2.3.4", LOGIN)
    decision = await limiter.consume("login:5.6.7.8", LOGIN)
    assert decision.allowed


async def test_hit_reports_without_raising(limiter):
    for _ in range(6):
        decision = await limiter.hit("gate:ip", LOGIN)
    assert decision.allowed is False
    assert decision.retry_after >= 1


async def test_blocked_for_reads_without_counting(limiter, clock):
    assert await limiter.blocked_for("mfa:user", LOGIN) == 0
    for _ in range(5):
        await limiter.hit("mfa:user", LOGIN)

    assert await limiter.blocked_for("mfa:user", LOGIN) == 900
    clock.advance(seconds=900)
    assert await limiter.blocked_for("mfa:user", LOGIN) == 0


async def test_reset_clears_counter(limiter):
    for _ in range(5):
        await limiter.hit("login:ip", LOGIN)
    await limiter.reset("login:ip")
    assert (await limiter.hit("login:ip", LOGIN)).count == 1


async def test_local_keys_are_bounded(clock):
    limiter = RateLimiter(clock=clock, max_local_keys=10)
    for i in range(25):
        await limiter.hit(f"k{i}", LOGIN)
    assert len(limiter._local) <= 10


async def test_uses_redis_counts_when_available(clock):
    cache = MagicMock()
    cache.consume_rate_limit = AsyncMock(return_value=(6, 42))
    limiter = RateLimiter(cache, clock=clock)

    with pytest.raises(RateLimited) as excinfo:
        await limiter.consume("login:ip", LOGIN)

    assert excinfo.value.retry_after == 42
    cache.consume_rate_limit.assert_awaited_once_with("login:ip", 900, cost=1)


async def test_redis_failure_falls_back_to_local_counters(clock):
    cache = MagicMock()
    cache.consume_rate_limit = AsyncMock(side_effect=RedisConnectionError("down"))
    cache.rate_limit_status = AsyncMock(side_effect=RedisConnectionError("down"))
    limiter = RateLimiter(cache, clock=clock)

    for _ in range(5):
        await limiter.consume("login:ip", LOGIN)
    with pytest.raises(RateLimited):
        await limiter.consume("login:ip", LOGIN)
    assert await limiter.blocked_for("login:ip", LOGIN) > 0
