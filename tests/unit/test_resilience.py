"""Unit tests for RateLimiter, CircuitBreaker and request signing."""

from __future__ import annotations

import asyncio

import pytest

from futures_engine.errors import CircuitOpenError
from futures_engine.trade.circuit_breaker import CircuitBreaker, CircuitState
from futures_engine.trade.rate_limiter import RateLimiter
from futures_engine.trade.signing import auth_headers, canonical_query, sign


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return _FakeClock()


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------


class TestRateLimiter:
    def test_rejects_non_positive_config(self):
        with pytest.raises(ValueError):
            RateLimiter(capacity=0)
        with pytest.raises(ValueError):
            RateLimiter(window_ms=0)

    @pytest.mark.asyncio
    async def test_tokens_consumed_without_waiting(self, clock):
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        limiter = RateLimiter(capacity=3, window_ms=3000, clock=clock, sleep=fake_sleep)
        for _ in range(3):
            await limiter.check_limit()
        assert sleeps == []
        assert limiter.available == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_waits_for_refill_when_empty(self, clock):
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            clock.now += seconds

        limiter = RateLimiter(capacity=2, window_ms=2000, clock=clock, sleep=fake_sleep)
        await limiter.check_limit()
        await limiter.check_limit()
        await limiter.check_limit()
        assert sleeps == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_refill_capped_at_capacity(self, clock):
        limiter = RateLimiter(capacity=5, window_ms=1000, clock=clock)
        await limiter.check_limit()
        clock.now += 100.0
        assert limiter.available == 5.0

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_bucket(self, clock):
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            clock.now += seconds

        limiter = RateLimiter(capacity=2, window_ms=1000, clock=clock, sleep=fake_sleep)
        await asyncio.gather(*(limiter.check_limit() for _ in range(4)))
        assert len(sleeps) == 2


# ---------------------------------------------------------------------------
# CircuitBreaker
# ---------------------------------------------------------------------------


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, reset_ms=1000, clock=clock)
        for _ in range(2):
            await breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        await breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.before_call()

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, clock=clock)
        await breaker.record_failure()
        await breaker.record_failure()
        await breaker.record_success()
        await breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_half_open_single_trial(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_ms=1000, clock=clock)
        await breaker.record_failure()
        clock.now += 1.0

        await breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.before_call()

    @pytest.mark.asyncio
    async def test_trial_success_closes(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_ms=1000, clock=clock)
        await breaker.record_failure()
        clock.now += 2.0
        await breaker.before_call()
        await breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        await breaker.before_call()

    @pytest.mark.asyncio
    async def test_trial_failure_reopens(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_ms=1000, clock=clock)
        await breaker.record_failure()
        clock.now += 2.0
        await breaker.before_call()
        await breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.before_call()

    @pytest.mark.asyncio
    async def test_released_trial_admits_next_call(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_ms=1000, clock=clock)
        await breaker.record_failure()
        clock.now += 2.0
        await breaker.before_call()
        breaker.release_trial()
        await breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN

    def test_snapshot(self):
        breaker = CircuitBreaker(failure_threshold=4, reset_ms=500, name="bybit")
        snap = breaker.snapshot()
        assert snap == {
            "name": "bybit",
            "state": "closed",
            "consecutive_failures": 0,
            "failure_threshold": 4,
            "reset_ms": 500,
        }


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


class TestSigning:
    def test_canonical_query_drops_none_and_keeps_order(self):
        assert canonical_query({"b": 1, "a": None, "c": "x"}) == "b=1&c=x"

    def test_sign_is_hex_sha256(self):
        signature = sign("secret", "1700000000000", "key", "5000", "category=linear")
        assert len(signature) == 64
        int(signature, 16)

    def test_signature_changes_with_payload(self):
        a = sign("secret", "1", "key", "5000", "x=1")
        b = sign("secret", "1", "key", "5000", "x=2")
        assert a != b

    def test_auth_headers(self):
        headers = auth_headers("key", "secret", 5000, "x=1", timestamp_ms=1700000000000)
        assert headers["X-BAPI-TIMESTAMP"] == "1700000000000"
        assert headers["X-BAPI-RECV-WINDOW"] == "5000"
        assert headers["X-BAPI-SIGN"] == sign("secret", "1700000000000", "key", "5000", "x=1")
        assert headers["X-BAPI-SIGN-TYPE"] == "2"
