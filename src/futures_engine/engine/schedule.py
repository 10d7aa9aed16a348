"""Fixed-rate deadline tracking shared by the ingestor and the trading loop."""

from __future__ import annotations

import time
from collections.abc import Callable


class FixedRateSchedule:
    """
    Deadlines sit on the grid start + k * interval. A cycle that overruns
    its slot does not queue the missed ones: the next deadline is the first
    grid point still in the future.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._clock = clock
        self._next = clock()

    def reset(self) -> None:
        self._next = self._clock()

    def advance(self) -> tuple[float, int]:
        """Step to the next future slot. Returns (seconds to wait, slots skipped)."""
        now = self._clock()
        self._next += self.interval
        skipped = 0
        if self._next <= now:
            skipped = int((now - self._next) // self.interval) + 1
            self._next += skipped * self.interval
        return max(0.0, self._next - now), skipped
