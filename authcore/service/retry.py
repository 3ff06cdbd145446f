from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from typing import Any, TypeVar

from authcore.logging import get_logger
from authcore.service.errors import StoreUnavailable
from authcore.storage.errors import BackendUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


def call_store(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a store call once, surfacing backend timeouts as StoreUnavailable.

    Used for writes, which are never retried: a timed-out write may or may not
    have been applied.
    """
    try:
        return fn(*args, **kwargs)
    except BackendUnavailable as exc:
        raise StoreUnavailable(detail={"backend": exc.backend}) from exc


async def read_with_retry(
    fn: Callable[..., T],
    *args: Any,
    attempts: int = 3,
    base: float = 0.05,
    cap: float = 1.0,
    jitter: bool = True,
    **kwargs: Any,
) -> T:
    """Call an idempotent store read with capped exponential backoff (+ optional jitter).

    attempts: total number of calls before StoreUnavailable propagates
    """
    attempt = 0
    while True:
        try:
            return call_store(fn, *args, **kwargs)
        except StoreUnavailable as exc:
            attempt += 1
            if attempt >= max(1, int(attempts)):
                raise
            delay = min(float(cap), float(base) * (2 ** (attempt - 1)))
            if jitter:
                delay = delay * (0.5 + random.random())
            logger.warning(
                "store_read_retry",
                operation=getattr(fn, "__name__", "unknown"),
                attempt=attempt,
                delay=round(delay, 3),
                backend=exc.detail.get("backend"),
            )
            await asyncio.sleep(max(0.0, delay))
