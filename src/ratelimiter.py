"""Token bucket pacing for Slack Web API calls.

A bucket holds up to `burst` permits and refills at `per_minute / 60` permits
per second. `acquire` takes one permit, suspending the caller until one is
available. Whenever a caller has to wait, a random jitter of up to
`max_jitter_seconds` is added to the wait so that several synchronizers
started by the same scheduler tick do not hit Slack in lockstep.

The limiter is process-local; it does not coordinate with other processes.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Awaitable, Callable

from config import get_logger

logger = get_logger(service="ratelimiter")


class RateLimiter:
    def __init__(
        self,
        per_minute: int,
        burst: int | None = None,
        max_jitter_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if per_minute <= 0:
            raise ValueError(f"per_minute must be positive, got {per_minute}")
        self.per_minute = float(per_minute)
        # Same default as a per-minute quota: the whole minute's budget may be spent at once
        self.burst = max(1, int(burst if burst is not None else per_minute))
        self.max_jitter_seconds = max(0.0, max_jitter_seconds)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.burst)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.per_minute / 60.0)
        self._last_refill = now

    def _take(self) -> float:
        """Consume a permit if one is available, otherwise return the seconds until one is."""
        self._refill(self._clock())
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / (self.per_minute / 60.0)

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                wait = self._take()
                if wait <= 0:
                    return
                jitter = random.uniform(0.0, self.max_jitter_seconds)
                logger.debug(f"Rate limited: sleeping {wait + jitter:.3f}s (jitter {jitter:.3f}s)")
                await self._sleep(wait + jitter)
