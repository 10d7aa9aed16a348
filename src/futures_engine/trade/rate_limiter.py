"""Async token bucket shared by every outbound venue call."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()


class RateLimiter:
    """
    Token bucket: `capacity` tokens refilled continuously over `window_ms`.

    check_limit() suspends the caller until a token is free. Waiters are
    served one at a time under an asyncio.Lock, so concurrent symbols
    sharing one venue account draw from the same bucket in arrival order.
    """

    def __init__(
        self,
        capacity: int = 900,
        window_ms: int = 60_000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity <= 0 or window_ms <= 0:
            raise ValueError("capacity and window_ms must be positive")
        self.capacity = capacity
        self.window_ms = window_ms
        self._clock = clock
        self._sleep = sleep
        self._refill_per_second = capacity / (window_ms / 1000.0)
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def check_limit(self) -> None:
        """Take one token, waiting for the refill if the bucket is empty."""
        async with self._lock:
            self._refill()
            if self._tokens < 1.0:
                wait = (1.0 - self._tokens) / self._refill_per_second
                logger.debug("rate_limit_wait", wait_seconds=round(wait, 3))
                await self._sleep(wait)
                self._refill()
                # Sleep granularity can leave us a hair short
                self._tokens = max(self._tokens, 1.0)
            self._tokens -= 1.0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self._refill_per_second)
        self._last_refill = now
