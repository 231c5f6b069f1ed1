"""Chain request pacing and retry.

One RateLimiter is shared by every chain call a crawler makes; ``with_retry``
wraps a single call with linear backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

log = logging.getLogger("idx.throttle")

T = TypeVar("T")


class RateLimiter:
    """Enforces a minimum spacing of 1 / max_rps between acquisitions."""

    def __init__(self, max_rps: int):
        if max_rps <= 0:
            raise ValueError(f"max_rps must be > 0, got {max_rps}")
        self.min_interval = 1.0 / max_rps
        self._last = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            wait = self._last + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last = time.monotonic()


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 2.0,
    limiter: RateLimiter | None = None,
    label: str = "",
) -> T:
    """Await ``fn()`` up to *attempts* times, sleeping base_delay × attempt between tries.

    The last error is re-raised unchanged.
    """
    for attempt in range(1, attempts + 1):
        if limiter is not None:
            await limiter.acquire()
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt >= attempts:
                log.warning("RETRY_EXHAUSTED │ %s failed after %d attempts: %s", label or "call", attempts, e)
                raise
            delay = base_delay * attempt
            log.debug("RETRY │ %s attempt %d/%d failed: %s, retrying in %.1fs",
                      label or "call", attempt, attempts, e, delay)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
