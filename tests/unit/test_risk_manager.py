"""Unit tests for RiskManager: sizing, leverage, rule boundaries and session state."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import _make_signal
from futures_engine.config import RiskConfig
from futures_engine.errors import EmergencyStopActive, RiskLimitExceeded
from futures_engine.models.position import Position, PositionSide
from futures_engine.models.signal import RiskLevel
from futures_engine.risk.risk_manager import RiskManager, TradeProposal, returns_correlation


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return _Clock(datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def risk(clock):
    rm = RiskManager(RiskConfig(), clock=clock)
    rm.update_equity(10_000.0)
    return rm


@pytest.fixture
def proposal():
    return TradeProposal(
        symbol="ETHUSDT",
        side=PositionSide.LONG,
        entry_price=2000.0,
        size=200.0,
        leverage=3,
        stop_loss=1960.0,
    )


def _position(symbol: str = "BTCUSDT", side: PositionSide = PositionSide.LONG) -> Position:
    return Position(symbol=symbol, side=side, entry_price=100.0, size=1.0)


def _walk(returns: list[float], start: float = 100.0) -> list[float]:
    prices = [start]
    for r in returns:
        prices.append(prices[-1] * (1 + r))
    return prices


_RETURNS = [0.01, -0.02, 0.015, 0.005, -0.01, 0.02, -0.005, 0.012, -0.018, 0.007] * 4


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------


class TestPositionSize:
    def test_low_risk_uses_full_risk_budget(self, risk):
        signal = _make_signal(risk_level=RiskLevel.LOW)
        assert risk.calculate_position_size(signal, 10_000.0) == pytest.approx(200.0)

    def test_tier_scaling(self, risk):
        sizes = [
            risk.calculate_position_size(_make_signal(risk_level=level), 10_000.0)
            for level in (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.EXTREME)
        ]
        assert sizes == pytest.approx([200.0, 200.0, 100.0, 50.0])

    def test_capped_at_max_position_size(self, risk):
        signal = _make_signal(risk_level=RiskLevel.LOW)
        assert risk.calculate_position_size(signal, 1_000_000.0) == 1000.0

    def test_capped_at_balance_fraction(self):
        rm = RiskManager(RiskConfig(risk_per_trade_pct=0.5, max_position_size=1e9))
        signal = _make_signal(risk_level=RiskLevel.LOW)
        assert rm.calculate_position_size(signal, 10_000.0) == pytest.approx(1000.0)

    def test_zero_balance(self, risk):
        assert risk.calculate_position_size(_make_signal(), 0.0) == 0.0

    def test_monotonic_in_balance(self, risk):
        signal = _make_signal(risk_level=RiskLevel.MEDIUM)
        sizes = [risk.calculate_position_size(signal, b) for b in (100, 1_000, 10_000, 100_000, 1_000_000)]
        assert sizes == sorted(sizes)


class TestDynamicStopLoss:
    def test_static_distance(self, risk):
        assert risk.calculate_dynamic_stop_loss(2000.0, PositionSide.LONG) == pytest.approx(1960.0)
        assert risk.calculate_dynamic_stop_loss(2000.0, PositionSide.SHORT) == pytest.approx(2040.0)

    def test_atr_widens_stop(self, risk):
        # 1.5 x 40 = 60 > 2% of 2000
        assert risk.calculate_dynamic_stop_loss(2000.0, PositionSide.LONG, atr=40.0) == pytest.approx(1940.0)

    def test_small_atr_keeps_static(self, risk):
        assert risk.calculate_dynamic_stop_loss(2000.0, PositionSide.SHORT, atr=5.0) == pytest.approx(2040.0)

    def test_dynamic_disabled(self):
        rm = RiskManager(RiskConfig(dynamic_stop_loss=False))
        assert rm.calculate_dynamic_stop_loss(2000.0, PositionSide.LONG, atr=100.0) == pytest.approx(1960.0)


class TestAdjustLeverage:
    def test_default(self, risk):
        assert risk.adjust_leverage(_make_signal(risk_level=RiskLevel.LOW), atr=10.0, price=2000.0) == 3

    def test_high_risk_unlevered(self, risk):
        assert risk.adjust_leverage(_make_signal(risk_level=RiskLevel.HIGH), atr=10.0, price=2000.0) == 1

    def test_high_volatility_halves(self, risk):
        assert risk.adjust_leverage(_make_signal(risk_level=RiskLevel.LOW), atr=100.0, price=2000.0) == 1

    def test_never_below_one_or_above_max(self):
        rm = RiskManager(RiskConfig(default_leverage=50, max_leverage=10))
        assert rm.adjust_leverage(_make_signal(risk_level=RiskLevel.LOW), atr=0.0, price=2000.0) == 10
        assert rm.adjust_leverage(_make_signal(risk_level=RiskLevel.EXTREME), atr=200.0, price=2000.0) == 1


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestValidateTrade:
    def test_clean_proposal_approved(self, risk, proposal):
        result = risk.validate_trade(proposal, [])
        assert result.approved is True
        assert result.failures == []

    def test_position_count_at_limit(self, risk, proposal):
        positions = [_position(f"SYM{i}USDT") for i in range(3)]
        result = risk.validate_trade(proposal, positions)
        assert result.approved is False
        assert [f.rule for f in result.failures] == ["position_count"]

    def test_position_count_below_limit(self, risk, proposal):
        positions = [_position(f"SYM{i}USDT") for i in range(2)]
        assert risk.validate_trade(proposal, positions).approved is True

    def test_oversized(self, risk, proposal):
        result = risk.validate_trade(proposal.model_copy(update={"size": 1000.01}), [])
        assert [f.rule for f in result.failures] == ["position_size"]

    def test_size_at_max_passes(self, risk, proposal):
        assert risk.validate_trade(proposal.model_copy(update={"size": 1000.0}), []).approved is True

    def test_zero_size(self, risk, proposal):
        result = risk.validate_trade(proposal.model_copy(update={"size": 0.0}), [])
        assert result.approved is False

    def test_leverage_above_max(self, risk, proposal):
        result = risk.validate_trade(proposal.model_copy(update={"leverage": 11}), [])
        assert [f.rule for f in result.failures] == ["leverage"]

    def test_daily_loss_at_limit(self, risk, proposal):
        risk.record_realized_pnl(-300.0)
        result = risk.validate_trade(proposal, [])
        assert "daily_loss" in [f.rule for f in result.failures]

    def test_daily_loss_below_limit(self, risk, proposal):
        risk.record_realized_pnl(-299.0)
        assert risk.validate_trade(proposal, []).approved is True

    def test_no_start_equity_passes(self, proposal):
        rm = RiskManager()
        assert rm.validate_trade(proposal, []).approved is True

    def test_multiple_failures_collected(self, risk, proposal):
        bad = proposal.model_copy(update={"size": 5000.0, "leverage": 20})
        result = risk.validate_trade(bad, [])
        assert {f.rule for f in result.failures} == {"position_size", "leverage"}


class TestCorrelation:
    def test_identical_same_side_rejected(self, risk, proposal):
        closes = _walk(_RETURNS)
        history = {"ETHUSDT": closes, "BTCUSDT": [p * 30 for p in closes]}
        result = risk.validate_trade(proposal, [_position("BTCUSDT", PositionSide.LONG)], history)
        assert [f.rule for f in result.failures] == ["correlation"]

    def test_identical_opposite_side_allowed(self, risk, proposal):
        closes = _walk(_RETURNS)
        history = {"ETHUSDT": closes, "BTCUSDT": [p * 30 for p in closes]}
        result = risk.validate_trade(proposal, [_position("BTCUSDT", PositionSide.SHORT)], history)
        assert result.approved is True

    def test_inverse_opposite_side_rejected(self, risk, proposal):
        history = {
            "ETHUSDT": _walk(_RETURNS),
            "BTCUSDT": _walk([-r for r in _RETURNS]),
        }
        result = risk.validate_trade(proposal, [_position("BTCUSDT", PositionSide.SHORT)], history)
        assert [f.rule for f in result.failures] == ["correlation"]

    def test_short_history_skipped(self, risk, proposal):
        closes = _walk(_RETURNS[:5])
        history = {"ETHUSDT": closes, "BTCUSDT": closes}
        result = risk.validate_trade(proposal, [_position("BTCUSDT", PositionSide.LONG)], history)
        assert result.approved is True

    def test_returns_correlation_helper(self):
        a = _walk(_RETURNS)
        assert returns_correlation(a, a, 30) == pytest.approx(1.0)
        assert returns_correlation(a, _walk([-r for r in _RETURNS]), 30) == pytest.approx(-1.0)
        assert returns_correlation(a[:5], a[:5], 30) is None
        assert returns_correlation([100.0] * 20, a, 30) is None


class TestEnforce:
    def test_raises_risk_limit(self, risk, proposal):
        with pytest.raises(RiskLimitExceeded) as exc_info:
            risk.enforce(proposal.model_copy(update={"leverage": 50}), [])
        assert exc_info.value.rules == ["leverage"]

    def test_raises_emergency_first(self, risk, proposal):
        risk.emergency_stop("test")
        with pytest.raises(EmergencyStopActive):
            risk.enforce(proposal, [])

    def test_returns_result_when_approved(self, risk, proposal):
        assert risk.enforce(proposal, []).approved is True


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class TestEmergencyStop:
    def test_activate_once(self, risk):
        assert risk.emergency_stop("first") is True
        assert risk.emergency_stop("second") is False
        assert risk.emergency_reason == "first"
        assert risk.is_halted is True

    def test_blocks_validation(self, risk, proposal):
        risk.emergency_stop()
        result = risk.validate_trade(proposal, [])
        assert "emergency_stop" in [f.rule for f in result.failures]

    def test_clear_resets_peak(self, risk):
        risk.update_equity(8_500.0)
        assert risk.is_halted is True
        risk.clear_emergency_stop()
        assert risk.is_halted is False
        assert risk.peak_equity == 8_500.0
        assert risk.drawdown_pct() == 0.0

    def test_clear_when_not_halted_is_noop(self, risk):
        risk.clear_emergency_stop()
        assert risk.peak_equity == 10_000.0


class TestEquityTracking:
    def test_peak_follows_new_highs(self, risk):
        risk.update_equity(11_000.0)
        risk.update_equity(10_500.0)
        assert risk.peak_equity == 11_000.0
        assert risk.drawdown_pct() == pytest.approx(500 / 11_000)

    def test_drawdown_breach_halts(self, risk):
        risk.update_equity(9_000.0)
        assert risk.is_halted is True
        assert "drawdown" in risk.emergency_reason

    def test_drawdown_just_inside_limit(self, risk):
        risk.update_equity(9_001.0)
        assert risk.is_halted is False

    def test_first_equity_sets_daily_start(self):
        rm = RiskManager()
        rm.update_equity(5_000.0)
        assert rm.daily_start_equity == 5_000.0

    def test_daily_roll_resets_pnl(self, risk, clock, proposal):
        risk.record_realized_pnl(-400.0)
        assert risk.validate_trade(proposal, []).approved is False

        risk.update_equity(9_600.0)
        clock.now += timedelta(days=1)
        assert risk.validate_trade(proposal, []).approved is True
        assert risk.daily_realized_pnl == 0.0
        assert risk.daily_start_equity == 9_600.0

    def test_status_snapshot(self, risk):
        risk.record_realized_pnl(-50.0)
        status = risk.status()
        assert status["daily_realized_pnl"] == -50.0
        assert status["equity"] == 10_000.0
        assert status["emergency_stop"] is False

