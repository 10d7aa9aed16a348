"""Position sizing, stop/leverage adjustment and session-wide risk limits."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import date, datetime, timezone

import numpy as np
import structlog
from pydantic import BaseModel

from futures_engine.config import RiskConfig
from futures_engine.errors import EmergencyStopActive, RiskLimitExceeded
from futures_engine.models.position import Position, PositionSide
from futures_engine.models.signal import RiskLevel, TradingSignal

logger = structlog.get_logger()

TIER_SIZE_MULTIPLIER = {
    RiskLevel.LOW: 1.0,
    RiskLevel.MEDIUM: 1.0,
    RiskLevel.HIGH: 0.5,
    RiskLevel.EXTREME: 0.25,
}
HIGH_VOLATILITY_ATR_PCT = 0.03
MIN_CORRELATION_POINTS = 10


class RiskCheck(BaseModel):
    passed: bool
    rule: str
    reason: str


class RiskResult(BaseModel):
    approved: bool
    failures: list[RiskCheck] = []
    warnings: list[RiskCheck] = []


class TradeProposal(BaseModel):
    symbol: str
    side: PositionSide
    entry_price: float
    size: float  # notional, quote currency
    leverage: int = 1
    stop_loss: float | None = None


def returns_correlation(a: Sequence[float], b: Sequence[float], lookback: int) -> float | None:
    """Pearson correlation of simple returns over the last `lookback` bars."""
    n = min(len(a), len(b), lookback + 1)
    if n < MIN_CORRELATION_POINTS + 1:
        return None
    xa = np.asarray(a[-n:], dtype=float)
    xb = np.asarray(b[-n:], dtype=float)
    if np.any(xa <= 0) or np.any(xb <= 0):
        return None
    ra = np.diff(xa) / xa[:-1]
    rb = np.diff(xb) / xb[:-1]
    if np.std(ra) == 0 or np.std(rb) == 0:
        return None
    return float(np.corrcoef(ra, rb)[0, 1])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskManager:
    """
    Session-wide risk state.

    | Rule               | Threshold                  | Action                          |
    |--------------------|----------------------------|---------------------------------|
    | Emergency stop     | manual or drawdown breach  | REJECT entries until cleared    |
    | Open positions     | max_open_positions         | REJECT new positions            |
    | Daily realized loss| max_daily_loss_pct         | REJECT entries until next UTC day|
    | Drawdown from peak | max_drawdown_pct           | EMERGENCY STOP                  |
    | Position size      | max_position_size          | REJECT order                    |
    | Leverage           | max_leverage               | REJECT order                    |
    | Correlation        | portfolio_correlation_limit| REJECT correlated exposure      |
    """

    def __init__(
        self,
        config: RiskConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or RiskConfig()
        self._clock = clock
        self.emergency_stopped = False
        self.emergency_reason: str | None = None
        self.daily_realized_pnl = 0.0
        self.daily_start_equity = 0.0
        self.peak_equity = 0.0
        self.equity = 0.0
        self._day: date = clock().date()

    @property
    def is_halted(self) -> bool:
        return self.emergency_stopped

    # --- Sizing ---

    def calculate_position_size(self, signal: TradingSignal, balance: float) -> float:
        """
        Notional size: balance x risk_per_trade, scaled down by risk tier,
        capped at max_position_size and at max_balance_fraction of balance.
        """
        if balance <= 0:
            return 0.0
        cfg = self.config
        size = balance * cfg.risk_per_trade_pct * TIER_SIZE_MULTIPLIER[signal.risk_level]
        return max(0.0, min(size, cfg.max_position_size, balance * cfg.max_balance_fraction))

    def calculate_dynamic_stop_loss(
        self, entry_price: float, side: PositionSide, atr: float = 0.0
    ) -> float:
        """Stop price at the static distance, widened to atr x multiplier when enabled."""
        cfg = self.config
        distance = entry_price * cfg.stop_loss_pct
        if cfg.dynamic_stop_loss and atr > 0:
            distance = max(distance, atr * cfg.atr_stop_multiplier)
        if side is PositionSide.LONG:
            return max(entry_price - distance, 0.0)
        return entry_price + distance

    def adjust_leverage(self, signal: TradingSignal, atr: float, price: float) -> int:
        cfg = self.config
        leverage = float(cfg.default_leverage)
        if signal.risk_level in (RiskLevel.HIGH, RiskLevel.EXTREME):
            leverage = 1.0
        if price > 0 and atr / price > HIGH_VOLATILITY_ATR_PCT:
            leverage /= 2
        return int(max(1, min(int(leverage), cfg.max_leverage)))

    # --- Validation ---

    def validate_trade(
        self,
        proposal: TradeProposal,
        open_positions: Sequence[Position],
        price_history: Mapping[str, Sequence[float]] | None = None,
    ) -> RiskResult:
        """Run all risk checks. Returns RiskResult."""
        self._roll_day()
        failures: list[RiskCheck] = []
        warnings: list[RiskCheck] = []

        for check in [
            self._check_emergency_stop(),
            self._check_position_count(open_positions),
            self._check_daily_loss(),
            self._check_drawdown(),
            self._check_position_size(proposal),
            self._check_leverage(proposal),
            self._check_correlation(proposal, open_positions, price_history or {}),
        ]:
            if not check.passed:
                failures.append(check)
            elif check.reason.startswith("WARNING"):
                warnings.append(check)

        approved = len(failures) == 0
        if not approved:
            logger.warning(
                "risk_rejected",
                symbol=proposal.symbol,
                side=proposal.side.value,
                failures=[f.rule for f in failures],
            )
        return RiskResult(approved=approved, failures=failures, warnings=warnings)

    def enforce(
        self,
        proposal: TradeProposal,
        open_positions: Sequence[Position],
        price_history: Mapping[str, Sequence[float]] | None = None,
    ) -> RiskResult:
        """validate_trade, raising on rejection."""
        if self.emergency_stopped:
            raise EmergencyStopActive(self.emergency_reason or "emergency stop active")
        result = self.validate_trade(proposal, open_positions, price_history)
        if not result.approved:
            raise RiskLimitExceeded(
                rules=[f.rule for f in result.failures],
                reasons=[f.reason for f in result.failures],
            )
        return result

    def _check_emergency_stop(self) -> RiskCheck:
        if self.emergency_stopped:
            return RiskCheck(
                passed=False,
                rule="emergency_stop",
                reason=f"Emergency stop active: {self.emergency_reason}",
            )
        return RiskCheck(passed=True, rule="emergency_stop", reason="OK")

    def _check_position_count(self, open_positions: Sequence[Position]) -> RiskCheck:
        count = len(open_positions)
        if count >= self.config.max_open_positions:
            return RiskCheck(
                passed=False,
                rule="position_count",
                reason=f"{count} positions >= max {self.config.max_open_positions}",
            )
        return RiskCheck(passed=True, rule="position_count", reason="OK")

    def _check_daily_loss(self) -> RiskCheck:
        if self.daily_start_equity <= 0:
            return RiskCheck(passed=True, rule="daily_loss", reason="No daily start equity set")
        loss_pct = -self.daily_realized_pnl / self.daily_start_equity
        if loss_pct >= self.config.max_daily_loss_pct:
            return RiskCheck(
                passed=False,
                rule="daily_loss",
                reason=f"Daily loss {loss_pct:.2%} >= {self.config.max_daily_loss_pct:.2%}",
            )
        return RiskCheck(passed=True, rule="daily_loss", reason="OK")

    def _check_drawdown(self) -> RiskCheck:
        dd_pct = self.drawdown_pct()
        if dd_pct >= self.config.max_drawdown_pct:
            return RiskCheck(
                passed=False,
                rule="max_drawdown",
                reason=f"Drawdown {dd_pct:.2%} >= {self.config.max_drawdown_pct:.2%}",
            )
        return RiskCheck(passed=True, rule="max_drawdown", reason="OK")

    def _check_position_size(self, proposal: TradeProposal) -> RiskCheck:
        if proposal.size <= 0:
            return RiskCheck(passed=False, rule="position_size", reason="Position size must be > 0")
        if proposal.size > self.config.max_position_size:
            return RiskCheck(
                passed=False,
                rule="position_size",
                reason=f"Size {proposal.size:.2f} > max {self.config.max_position_size:.2f}",
            )
        return RiskCheck(passed=True, rule="position_size", reason="OK")

    def _check_leverage(self, proposal: TradeProposal) -> RiskCheck:
        if proposal.leverage > self.config.max_leverage:
            return RiskCheck(
                passed=False,
                rule="leverage",
                reason=f"Leverage {proposal.leverage}x > max {self.config.max_leverage}x",
            )
        return RiskCheck(passed=True, rule="leverage", reason="OK")

    def _check_correlation(
        self,
        proposal: TradeProposal,
        open_positions: Sequence[Position],
        price_history: Mapping[str, Sequence[float]],
    ) -> RiskCheck:
        own = price_history.get(proposal.symbol)
        if not own:
            return RiskCheck(passed=True, rule="correlation", reason="No price history")
        limit = self.config.portfolio_correlation_limit
        for pos in open_positions:
            if pos.symbol == proposal.symbol:
                continue
            other = price_history.get(pos.symbol)
            if not other:
                continue
            corr = returns_correlation(own, other, self.config.correlation_lookback)
            if corr is None:
                continue
            # Opposite sides on negatively correlated symbols add exposure too
            effective = corr if pos.side is proposal.side else -corr
            if effective > limit:
                return RiskCheck(
                    passed=False,
                    rule="correlation",
                    reason=f"Correlation {corr:.2f} with open {pos.symbol} {pos.side.value} exceeds {limit:.2f}",
                )
        return RiskCheck(passed=True, rule="correlation", reason="OK")

    # --- Session state ---

    def emergency_stop(self, reason: str = "manual") -> bool:
        """Halt new entries. Returns False when already halted."""
        if self.emergency_stopped:
            return False
        self.emergency_stopped = True
        self.emergency_reason = reason
        logger.warning("emergency_stop_activated", reason=reason)
        return True

    def clear_emergency_stop(self) -> None:
        if not self.emergency_stopped:
            return
        self.emergency_stopped = False
        self.emergency_reason = None
        # Start measuring drawdown again from where the operator resumed
        self.peak_equity = self.equity
        logger.info("emergency_stop_cleared")

    def record_realized_pnl(self, pnl: float) -> None:
        self._roll_day()
        self.daily_realized_pnl += pnl
        logger.info("realized_pnl_recorded", pnl=pnl, daily_pnl=self.daily_realized_pnl)
        if not self._check_daily_loss().passed:
            logger.warning(
                "daily_loss_limit_reached",
                daily_pnl=self.daily_realized_pnl,
                start_equity=self.daily_start_equity,
            )

    def update_equity(self, equity: float) -> None:
        self._roll_day()
        self.equity = equity
        if self.daily_start_equity <= 0:
            self.daily_start_equity = equity
        if equity > self.peak_equity:
            self.peak_equity = equity
        dd_pct = self.drawdown_pct()
        if dd_pct >= self.config.max_drawdown_pct:
            self.emergency_stop(f"drawdown {dd_pct:.2%} from peak {self.peak_equity:.2f}")

    def drawdown_pct(self) -> float:
        if self.peak_equity <= 0:
            return 0.0
        return max(0.0, (self.peak_equity - self.equity) / self.peak_equity)

    def _roll_day(self) -> None:
        today = self._clock().date()
        if today == self._day:
            return
        self._day = today
        self.daily_realized_pnl = 0.0
        self.daily_start_equity = self.equity
        logger.info("daily_reset", equity=self.equity)

    def status(self) -> dict:
        return {
            "emergency_stop": self.emergency_stopped,
            "emergency_reason": self.emergency_reason,
            "daily_realized_pnl": round(self.daily_realized_pnl, 4),
            "daily_start_equity": round(self.daily_start_equity, 4),
            "equity": round(self.equity, 4),
            "peak_equity": round(self.peak_equity, 4),
            "drawdown_pct": round(self.drawdown_pct(), 6),
        }
