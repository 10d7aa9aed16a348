"""Order-flow analytics: CVD, volume significance, chart pattern and VRVP."""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np
import structlog

from futures_engine.config import AnalyticsConfig
from futures_engine.models.analytics import (
    CVDResult,
    LiquidityZone,
    MarketAnalysis,
    Momentum,
    PatternResult,
    PatternType,
    Pressure,
    Significance,
    Trend,
    VolumeNode,
    VolumeResult,
    VRVPResult,
    ZoneType,
)
from futures_engine.models.candle import Candle
from futures_engine.models.snapshot import OrderBook

logger = structlog.get_logger()


def _direction(candle: Candle) -> int:
    if candle.close > candle.open:
        return 1
    if candle.close < candle.open:
        return -1
    return 0


def _body_pct(candle: Candle) -> float:
    if candle.open <= 0:
        return 0.0
    return (candle.close - candle.open) / candle.open * 100


class AdvancedAnalytics:
    """
    Stateless analysis over a candle window and an order-book snapshot.
    All thresholds come from AnalyticsConfig.
    """

    def __init__(self, config: AnalyticsConfig | None = None) -> None:
        self.config = config or AnalyticsConfig()

    # --- CVD ---

    def split_volume(self, candle: Candle) -> tuple[float, float]:
        """
        Buy/sell volume for one bar. Reported taker volumes win; otherwise
        the body direction decides, the losing side being credited with
        `cvd_minority_share` of the bar. This is an estimate, not a tape.
        """
        if candle.buy_volume is not None and candle.sell_volume is not None:
            return candle.buy_volume, candle.sell_volume
        if candle.buy_volume is not None:
            return candle.buy_volume, max(candle.volume - candle.buy_volume, 0.0)
        if candle.sell_volume is not None:
            return max(candle.volume - candle.sell_volume, 0.0), candle.sell_volume

        minority = candle.volume * self.config.cvd_minority_share
        direction = _direction(candle)
        if direction > 0:
            return candle.volume, minority
        if direction < 0:
            return minority, candle.volume
        return minority, minority

    def calculate_cvd(self, candles: Sequence[Candle]) -> CVDResult:
        if not candles:
            return CVDResult()
        cfg = self.config

        deltas: list[float] = []
        buy_total = 0.0
        sell_total = 0.0
        for candle in candles:
            buy, sell = self.split_volume(candle)
            buy_total += buy
            sell_total += sell
            deltas.append(buy - sell)

        cvd = float(sum(deltas))
        recent = float(sum(deltas[-cfg.cvd_recent_bars:]))

        if cvd < -cfg.cvd_strong_threshold:
            trend, pressure = Trend.BEARISH, Pressure.STRONG_SELL
        elif cvd < -cfg.cvd_threshold:
            trend, pressure = Trend.BEARISH, Pressure.SELL
        elif cvd > cfg.cvd_strong_threshold:
            trend, pressure = Trend.BULLISH, Pressure.STRONG_BUY
        elif cvd > cfg.cvd_threshold:
            trend, pressure = Trend.BULLISH, Pressure.BUY
        else:
            trend, pressure = Trend.NEUTRAL, Pressure.NEUTRAL

        magnitude = min(abs(cvd) / cfg.cvd_magnitude_scale, 100.0) if cfg.cvd_magnitude_scale > 0 else 0.0

        return CVDResult(
            cvd=cvd,
            trend=trend,
            pressure=pressure,
            magnitude=magnitude,
            recent_delta=recent,
            buy_volume=buy_total,
            sell_volume=sell_total,
        )

    # --- Volume ---

    def analyze_volume(self, candles: Sequence[Candle]) -> VolumeResult:
        """Latest bar against the mean of every earlier bar in the window."""
        if not candles:
            return VolumeResult()
        cfg = self.config
        current = candles[-1].volume
        prior = [c.volume for c in candles[:-1]]
        if not prior:
            return VolumeResult(current_volume=current, average_volume=current)

        average = float(np.mean(prior))
        ratio = current / average if average > 0 else 1.0

        if ratio > cfg.volume_high_ratio:
            significance = Significance.HIGH
        elif ratio > cfg.volume_medium_ratio:
            significance = Significance.MEDIUM
        else:
            significance = Significance.LOW

        return VolumeResult(
            current_volume=current,
            average_volume=average,
            ratio=ratio,
            significance=significance,
            is_surge=ratio > cfg.volume_surge_ratio,
        )

    # --- Pattern ---

    def detect_pattern(self, candles: Sequence[Candle], timeframe: str = "1h") -> PatternResult:
        if not candles:
            return PatternResult(timeframe=timeframe)
        cfg = self.config
        latest = candles[-1]
        change = _body_pct(latest)

        ptype = PatternType.CONSOLIDATION
        confidence = 50.0
        momentum = Momentum.WEAK
        direction = Trend.NEUTRAL

        if change < -cfg.pattern_strong_pct:
            ptype, confidence, momentum = PatternType.BEARISH_MOMENTUM, 85.0, Momentum.STRONG
        elif change < -cfg.pattern_moderate_pct:
            ptype, confidence, momentum = PatternType.BEARISH_MOMENTUM, 70.0, Momentum.MODERATE
        elif change > cfg.pattern_strong_pct:
            ptype, confidence, momentum = PatternType.BULLISH_MOMENTUM, 85.0, Momentum.STRONG
        elif change > cfg.pattern_moderate_pct:
            ptype, confidence, momentum = PatternType.BULLISH_MOMENTUM, 70.0, Momentum.MODERATE

        if ptype is PatternType.BEARISH_MOMENTUM:
            direction = Trend.BEARISH
        elif ptype is PatternType.BULLISH_MOMENTUM:
            direction = Trend.BULLISH

        # Two bars one way, then a large body the other way
        if len(candles) >= 3:
            first, second = candles[-3], candles[-2]
            lead = _direction(first)
            last_dir = _direction(latest)
            if (
                lead != 0
                and _direction(second) == lead
                and last_dir == -lead
                and abs(change) > cfg.reversal_body_pct
            ):
                ptype = PatternType.REVERSAL
                confidence = 75.0
                direction = Trend.BULLISH if last_dir > 0 else Trend.BEARISH

        return PatternResult(
            type=ptype,
            confidence=confidence,
            price_change_pct=change,
            momentum=momentum,
            direction=direction,
            timeframe=timeframe,
        )

    # --- VRVP ---

    def analyze_vrvp(
        self,
        order_book: OrderBook,
        current_price: float,
        candles: Sequence[Candle] = (),
    ) -> VRVPResult:
        """
        Support/resistance from the heaviest resting levels near the top of
        the book. A level is a hunter zone when it holds more than
        `hunter_zone_multiple` times the best level on its side.
        """
        cfg = self.config
        zones: list[LiquidityZone] = []
        supports: list[float] = []
        resistances: list[float] = []

        for levels, zone_type, out in (
            (order_book.bids, ZoneType.SUPPORT, supports),
            (order_book.asks, ZoneType.RESISTANCE, resistances),
        ):
            if not levels:
                continue
            best_qty = levels[0][1]
            scanned = sorted(levels[: cfg.vrvp_scan_depth], key=lambda lvl: lvl[1], reverse=True)
            for price, qty in scanned[: cfg.vrvp_levels]:
                out.append(price)
                zones.append(
                    LiquidityZone(
                        price=price,
                        volume=qty,
                        type=zone_type,
                        is_hunter_zone=qty > best_qty * cfg.hunter_zone_multiple,
                    )
                )

        high_nodes, low_zones = self.build_volume_profile(candles, current_price)
        hunters = [z for z in zones if z.is_hunter_zone]
        if hunters:
            logger.debug(
                "hunter_zones_detected",
                symbol=order_book.symbol,
                prices=[z.price for z in hunters],
            )

        return VRVPResult(
            support_levels=sorted(supports, reverse=True),
            resistance_levels=sorted(resistances),
            liquidity_zones=zones,
            high_volume_nodes=high_nodes,
            low_volume_zones=low_zones,
        )

    def build_volume_profile(
        self, candles: Sequence[Candle], reference_price: float
    ) -> tuple[list[VolumeNode], list[VolumeNode]]:
        """
        Bucket bar volume by close price. Returns (high-volume nodes,
        low-volume zones), both keyed by bucket floor price.
        """
        cfg = self.config
        if not candles or reference_price <= 0 or cfg.volume_profile_bucket_pct <= 0:
            return [], []

        bucket = reference_price * cfg.volume_profile_bucket_pct
        profile: dict[float, float] = {}
        for candle in candles:
            key = round(math.floor(candle.close / bucket) * bucket, 8)
            profile[key] = profile.get(key, 0.0) + candle.volume

        ranked = sorted(profile.items(), key=lambda kv: kv[1], reverse=True)
        high_nodes = [VolumeNode(price=p, volume=v) for p, v in ranked[: cfg.high_volume_nodes]]

        mean_volume = float(np.mean(list(profile.values())))
        low_zones = [
            VolumeNode(price=p, volume=v)
            for p, v in sorted(profile.items())
            if v < mean_volume * cfg.low_volume_zone_ratio
        ]
        return high_nodes, low_zones

    # --- Bundle ---

    def analyze(
        self,
        symbol: str,
        candles: Sequence[Candle],
        order_book: OrderBook,
        timeframe: str = "1h",
        current_price: float | None = None,
    ) -> MarketAnalysis:
        if current_price is None:
            current_price = candles[-1].close if candles else 0.0
        analysis = MarketAnalysis(
            symbol=symbol,
            timeframe=timeframe,
            current_price=current_price,
            cvd=self.calculate_cvd(candles),
            volume=self.analyze_volume(candles),
            pattern=self.detect_pattern(candles, timeframe),
            vrvp=self.analyze_vrvp(order_book, current_price, candles),
        )
        logger.debug(
            "market_analyzed",
            symbol=symbol,
            cvd=round(analysis.cvd.cvd, 2),
            pressure=analysis.cvd.pressure.value,
            volume_ratio=round(analysis.volume.ratio, 3),
            pattern=analysis.pattern.type.value,
        )
        return analysis
