"""Typed failures raised across the engine.

Every stage catches these per cycle, logs them and degrades the cycle to
HOLD/no-op. None of them is allowed to terminate the process.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError):
    """Malformed tick, order book or venue payload."""


class OrderBelowMinimum(ValidationError):
    """Order quantity rounds below the instrument minimum. Nothing was sent."""


class VenueRejected(EngineError):
    """The venue answered and refused the request (4xx or business error code)."""

    def __init__(self, message: str, status_code: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    def __str__(self) -> str:
        return f"venue rejected (status={self.status_code}, code={self.code}): {self.message}"


class TransientNetworkError(EngineError):
    """Transport failure, timeout, 5xx or throttling. Safe to retry."""


class ServiceDegraded(EngineError):
    """Retries against the venue were exhausted."""


class CircuitOpenError(EngineError):
    """Call refused locally because the circuit breaker is open."""


class RiskLimitExceeded(EngineError):
    """A proposed trade failed one or more risk rules."""

    def __init__(self, rules: list[str], reasons: list[str]) -> None:
        super().__init__("; ".join(reasons) or "risk limit exceeded")
        self.rules = rules
        self.reasons = reasons


class EmergencyStopActive(EngineError):
    """New entries are blocked until the emergency stop is cleared."""
