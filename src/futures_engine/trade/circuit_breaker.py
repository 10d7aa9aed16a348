"""Circuit breaker guarding the venue connection."""

from __future__ import annotations

import asyncio
import enum
import time
from collections.abc import Callable

import structlog

from futures_engine.errors import CircuitOpenError

logger = structlog.get_logger()


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN once `reset_ms` has elapsed; exactly one trial call
    is let through. Trial success closes the circuit, trial failure
    reopens it. While OPEN (or while the trial is in flight) before_call()
    raises CircuitOpenError without any network I/O.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_ms: int = 60_000,
        name: str = "venue",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_ms = reset_ms
        self.name = name
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: float | None = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    def _set_state(self, new_state: CircuitState) -> None:
        old = self.state
        self.state = new_state
        logger.info(
            "circuit_state_transition",
            breaker=self.name,
            old=old.value,
            new=new_state.value,
            failures=self.consecutive_failures,
        )

    async def before_call(self) -> None:
        """Admit or refuse one call."""
        async with self._lock:
            if self.state is CircuitState.OPEN:
                elapsed_ms = (self._clock() - (self.opened_at or 0.0)) * 1000.0
                if elapsed_ms < self.reset_ms:
                    raise CircuitOpenError(
                        f"circuit '{self.name}' open, retry in {(self.reset_ms - elapsed_ms) / 1000:.1f}s"
                    )
                self._set_state(CircuitState.HALF_OPEN)

            if self.state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(f"circuit '{self.name}' half-open, trial in flight")
                self._trial_in_flight = True

    async def record_success(self) -> None:
        async with self._lock:
            self.consecutive_failures = 0
            self._trial_in_flight = False
            if self.state is not CircuitState.CLOSED:
                self.opened_at = None
                self._set_state(CircuitState.CLOSED)

    async def record_failure(self) -> None:
        async with self._lock:
            self.consecutive_failures += 1
            if self.state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._open()
            elif (
                self.state is CircuitState.CLOSED
                and self.consecutive_failures >= self.failure_threshold
            ):
                self._open()

    def release_trial(self) -> None:
        """Forget an admitted trial whose outcome never arrived (cancelled call)."""
        self._trial_in_flight = False

    def _open(self) -> None:
        self.opened_at = self._clock()
        self._set_state(CircuitState.OPEN)

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "reset_ms": self.reset_ms,
        }
