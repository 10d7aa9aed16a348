"""Rule-based fusion of analytics, indicators and AI advice into one signal."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from futures_engine.config import AnalyticsConfig
from futures_engine.models.analytics import MarketAnalysis, PatternType, Pressure, Significance, Trend
from futures_engine.models.position import PositionSide
from futures_engine.models.signal import AIRecommendation, RiskLevel, SignalAction, TradingSignal

if TYPE_CHECKING:
    from futures_engine.config import Settings
    from futures_engine.models.indicator_set import IndicatorSet

logger = structlog.get_logger()

BASE_CONFIDENCE = 50.0
MAX_CONFIDENCE = 95.0
HUNTER_ZONE_CONFIDENCE = 20.0
LOW_VOLUME_CONFIDENCE = 30.0
CVD_TAKEOVER_CONFIDENCE = 70.0

MOMENTUM_BONUS = 20.0
REVERSAL_BONUS = 10.0
SURGE_BONUS = 15.0
HIGH_VOLUME_BONUS = 10.0
MEDIUM_VOLUME_BONUS = 5.0
STRONG_CVD_BONUS = 25.0
CVD_BONUS = 10.0
CVD_PENALTY = 10.0
INDICATOR_STEP = 5.0
CONSISTENCY_BONUS = 15.0
AI_AGREE_BONUS = 10.0
AI_DISAGREE_PENALTY = 15.0

RSI_OVERBOUGHT = 70.0
RSI_OVERSOLD = 30.0

_SELL_PRESSURE = (Pressure.SELL, Pressure.STRONG_SELL)
_BUY_PRESSURE = (Pressure.BUY, Pressure.STRONG_BUY)
_STRONG_PRESSURE = (Pressure.STRONG_SELL, Pressure.STRONG_BUY)


def risk_tier(confidence: float) -> RiskLevel:
    if confidence < 50:
        return RiskLevel.HIGH
    if confidence < 70:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class SignalGenerator:
    """
    Deterministic scoring. The pattern sets the initial direction; volume,
    CVD, indicators, consistency and the AI advisor adjust confidence; every
    contributing rule appends a reason.

    Overrides, in precedence order:
    1. Hunter zone within proximity of price -> HOLD, 20, EXTREME
    2. LOW volume significance -> HOLD, 30, HIGH
    3. Otherwise the additive score, clamped to [0, 95]
    """

    def __init__(
        self,
        config: AnalyticsConfig | None = None,
        stop_loss_buffer_pct: float = 0.02,
        default_take_profit_pct: float = 0.03,
        ai_min_confidence: float = 0.6,
    ) -> None:
        self.config = config or AnalyticsConfig()
        self.stop_loss_buffer_pct = stop_loss_buffer_pct
        self.default_take_profit_pct = default_take_profit_pct
        self.ai_min_confidence = ai_min_confidence

    @classmethod
    def from_settings(cls, settings: Settings) -> SignalGenerator:
        return cls(
            config=settings.analytics_config(),
            stop_loss_buffer_pct=settings.STOP_LOSS_BUFFER_PCT,
            default_take_profit_pct=settings.DEFAULT_TAKE_PROFIT_PCT,
            ai_min_confidence=settings.AI_MIN_CONFIDENCE,
        )

    def generate(
        self,
        analysis: MarketAnalysis,
        indicators: IndicatorSet | None = None,
        ai: AIRecommendation | None = None,
        held_side: PositionSide | None = None,
    ) -> TradingSignal:
        price = analysis.current_price
        reasons: list[str] = []

        action, confidence = self._score_pattern(analysis, reasons)
        confidence += self._score_volume(analysis, reasons)
        action, confidence = self._score_cvd(analysis, action, confidence, reasons)

        if indicators is not None and indicators.is_warm and action in (SignalAction.LONG, SignalAction.SHORT):
            confidence += self._score_indicators(action, price, indicators, reasons)

        pattern, cvd = analysis.pattern, analysis.cvd
        if (
            action is SignalAction.SHORT
            and cvd.trend is Trend.BEARISH
            and pattern.type is PatternType.BEARISH_MOMENTUM
        ) or (
            action is SignalAction.LONG
            and cvd.trend is Trend.BULLISH
            and pattern.type is PatternType.BULLISH_MOMENTUM
        ):
            confidence += CONSISTENCY_BONUS
            reasons.append("Pattern, order flow and direction aligned")

        if ai is not None:
            confidence += self._score_ai(action, ai, reasons)

        # Override 1: liquidity trap avoidance always wins
        zone = analysis.vrvp.hunter_zone_near(price, self.config.hunter_zone_proximity)
        if zone is not None:
            reasons.append(
                f"Hunter zone at {zone.price:.4f} ({zone.type.value.lower()}, {zone.volume:.2f} resting) "
                f"within {self.config.hunter_zone_proximity:.0%} of price, avoiding entry"
            )
            return self._build(analysis, SignalAction.HOLD, HUNTER_ZONE_CONFIDENCE, RiskLevel.EXTREME, reasons)

        # Override 2: thin volume produces false signals
        if analysis.volume.significance is Significance.LOW:
            reasons.append(
                f"Volume too low ({analysis.volume.ratio:.2f}x average), avoiding false signals"
            )
            return self._build(analysis, SignalAction.HOLD, LOW_VOLUME_CONFIDENCE, RiskLevel.HIGH, reasons)

        confidence = max(0.0, min(confidence, MAX_CONFIDENCE))

        if action is SignalAction.HOLD and held_side is not None and self._turned_against(held_side, analysis, ai):
            action = SignalAction.EXIT
            reasons.append(f"Order flow turned against held {held_side.value} position")

        if not reasons:
            reasons.append("No actionable setup")

        return self._build(analysis, action, confidence, risk_tier(confidence), reasons)

    # --- Scoring rules ---

    def _score_pattern(self, analysis: MarketAnalysis, reasons: list[str]) -> tuple[SignalAction, float]:
        pattern = analysis.pattern
        confidence = BASE_CONFIDENCE
        if pattern.type is PatternType.BEARISH_MOMENTUM:
            reasons.append(
                f"Bearish momentum: {pattern.price_change_pct:.2f}% move ({pattern.momentum.value.lower()})"
            )
            return SignalAction.SHORT, confidence + MOMENTUM_BONUS
        if pattern.type is PatternType.BULLISH_MOMENTUM:
            reasons.append(
                f"Bullish momentum: {pattern.price_change_pct:.2f}% move ({pattern.momentum.value.lower()})"
            )
            return SignalAction.LONG, confidence + MOMENTUM_BONUS
        if pattern.type is PatternType.REVERSAL and pattern.direction is not Trend.NEUTRAL:
            action = SignalAction.LONG if pattern.direction is Trend.BULLISH else SignalAction.SHORT
            reasons.append(
                f"{pattern.direction.value.capitalize()} reversal after two opposing bars "
                f"({pattern.price_change_pct:.2f}%)"
            )
            return action, confidence + REVERSAL_BONUS
        return SignalAction.HOLD, confidence

    def _score_volume(self, analysis: MarketAnalysis, reasons: list[str]) -> float:
        volume = analysis.volume
        if volume.is_surge:
            reasons.append(f"Volume surge {volume.ratio:.2f}x average")
            return SURGE_BONUS
        if volume.significance is Significance.HIGH:
            reasons.append(f"High volume {volume.ratio:.2f}x average")
            return HIGH_VOLUME_BONUS
        if volume.significance is Significance.MEDIUM:
            reasons.append(f"Above-average volume {volume.ratio:.2f}x")
            return MEDIUM_VOLUME_BONUS
        return 0.0

    def _score_cvd(
        self,
        analysis: MarketAnalysis,
        action: SignalAction,
        confidence: float,
        reasons: list[str],
    ) -> tuple[SignalAction, float]:
        cvd = analysis.cvd
        if cvd.pressure in _SELL_PRESSURE:
            flow = SignalAction.SHORT
        elif cvd.pressure in _BUY_PRESSURE:
            flow = SignalAction.LONG
        else:
            return action, confidence

        strong = cvd.pressure in _STRONG_PRESSURE
        label = "sell" if flow is SignalAction.SHORT else "buy"
        billions = cvd.cvd / 1e9

        if action is flow:
            if strong:
                reasons.append(f"Strong {label} pressure, CVD {billions:.2f}B")
                return action, confidence + STRONG_CVD_BONUS
            reasons.append(f"CVD confirms {label} pressure ({billions:.2f}B)")
            return action, confidence + CVD_BONUS

        if strong:
            reasons.append(f"Extreme CVD {billions:.2f}B, {label} pressure takes over")
            return flow, CVD_TAKEOVER_CONFIDENCE

        if action is not SignalAction.HOLD:
            reasons.append(f"CVD shows {label} pressure against the pattern ({billions:.2f}B)")
            return action, confidence - CVD_PENALTY
        return action, confidence

    def _score_indicators(
        self,
        action: SignalAction,
        price: float,
        indicators: IndicatorSet,
        reasons: list[str],
    ) -> float:
        short = action is SignalAction.SHORT
        score = 0.0

        if indicators.rsi > RSI_OVERBOUGHT:
            score += INDICATOR_STEP if short else -INDICATOR_STEP
            reasons.append(f"RSI overbought ({indicators.rsi:.1f})")
        elif indicators.rsi < RSI_OVERSOLD:
            score += -INDICATOR_STEP if short else INDICATOR_STEP
            reasons.append(f"RSI oversold ({indicators.rsi:.1f})")

        hist = indicators.macd.histogram
        if hist != 0:
            agrees = (hist < 0) == short
            score += INDICATOR_STEP if agrees else -INDICATOR_STEP
            reasons.append(
                f"MACD histogram {'confirms' if agrees else 'opposes'} ({hist:.4f})"
            )

        middle = indicators.bollinger.middle
        if middle > 0 and ((short and price < middle) or (not short and price > middle)):
            score += INDICATOR_STEP
            reasons.append(
                f"Price {'below' if short else 'above'} Bollinger middle ({middle:.2f})"
            )
        return score

    def _score_ai(self, action: SignalAction, ai: AIRecommendation, reasons: list[str]) -> float:
        if ai.confidence < self.ai_min_confidence:
            reasons.append(
                f"AI suggests {ai.action.value} at {ai.confidence:.0%}, below threshold"
            )
            return 0.0
        if action not in (SignalAction.LONG, SignalAction.SHORT):
            reasons.append(f"AI suggests {ai.action.value} ({ai.confidence:.0%})")
            return 0.0
        if ai.action is action:
            reasons.append(f"AI advisor agrees ({ai.confidence:.0%})")
            return AI_AGREE_BONUS
        if ai.action in (SignalAction.LONG, SignalAction.SHORT, SignalAction.EXIT):
            reasons.append(f"AI advisor disagrees: {ai.action.value} ({ai.confidence:.0%})")
            return -AI_DISAGREE_PENALTY
        return 0.0

    def _turned_against(
        self, held_side: PositionSide, analysis: MarketAnalysis, ai: AIRecommendation | None
    ) -> bool:
        against_trend = Trend.BEARISH if held_side is PositionSide.LONG else Trend.BULLISH
        if analysis.cvd.trend is against_trend:
            return True
        if ai is None or ai.confidence < self.ai_min_confidence:
            return False
        against_action = SignalAction.SHORT if held_side is PositionSide.LONG else SignalAction.LONG
        return ai.action in (against_action, SignalAction.EXIT)

    # --- Output ---

    def _levels(self, action: SignalAction, analysis: MarketAnalysis) -> tuple[float | None, float | None]:
        price = analysis.current_price
        vrvp = analysis.vrvp
        buffer = self.stop_loss_buffer_pct
        tp_pct = self.default_take_profit_pct

        if action is SignalAction.SHORT:
            stop = price * (1 + buffer)
            tighter = [r for r in vrvp.resistance_levels if price < r < stop]
            if tighter:
                stop = min(tighter)
            below = [s for s in vrvp.support_levels if s < price]
            target = max(below) if below else price * (1 - tp_pct)
            return stop, target

        if action is SignalAction.LONG:
            stop = price * (1 - buffer)
            tighter = [s for s in vrvp.support_levels if stop < s < price]
            if tighter:
                stop = max(tighter)
            above = [r for r in vrvp.resistance_levels if r > price]
            target = min(above) if above else price * (1 + tp_pct)
            return stop, target

        return None, None

    def _build(
        self,
        analysis: MarketAnalysis,
        action: SignalAction,
        confidence: float,
        risk_level: RiskLevel,
        reasons: list[str],
    ) -> TradingSignal:
        stop, target = self._levels(action, analysis)
        signal = TradingSignal(
            symbol=analysis.symbol,
            action=action,
            confidence=confidence,
            entry_price=analysis.current_price,
            stop_loss=stop,
            take_profit=target,
            risk_level=risk_level,
            reasoning=reasons,
        )
        logger.info(
            "signal_generated",
            symbol=signal.symbol,
            action=signal.action.value,
            confidence=round(signal.confidence, 1),
            risk=signal.risk_level.value,
        )
        return signal
