"""CVD, volume, pattern and VRVP result models."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class Trend(str, enum.Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class Pressure(str, enum.Enum):
    STRONG_SELL = "STRONG_SELL"
    SELL = "SELL"
    NEUTRAL = "NEUTRAL"
    BUY = "BUY"
    STRONG_BUY = "STRONG_BUY"


class Significance(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class PatternType(str, enum.Enum):
    BEARISH_MOMENTUM = "BEARISH_MOMENTUM"
    BULLISH_MOMENTUM = "BULLISH_MOMENTUM"
    CONSOLIDATION = "CONSOLIDATION"
    REVERSAL = "REVERSAL"


class Momentum(str, enum.Enum):
    WEAK = "WEAK"
    MODERATE = "MODERATE"
    STRONG = "STRONG"


class ZoneType(str, enum.Enum):
    SUPPORT = "SUPPORT"
    RESISTANCE = "RESISTANCE"


class CVDResult(BaseModel):
    cvd: float = 0.0
    trend: Trend = Trend.NEUTRAL
    pressure: Pressure = Pressure.NEUTRAL
    magnitude: float = Field(0.0, ge=0.0, le=100.0)
    recent_delta: float = 0.0
    buy_volume: float = 0.0
    sell_volume: float = 0.0


class VolumeResult(BaseModel):
    current_volume: float = 0.0
    average_volume: float = 0.0
    ratio: float = 1.0
    significance: Significance = Significance.LOW
    is_surge: bool = False


class PatternResult(BaseModel):
    type: PatternType = PatternType.CONSOLIDATION
    confidence: float = Field(50.0, ge=0.0, le=100.0)
    price_change_pct: float = 0.0
    momentum: Momentum = Momentum.WEAK
    direction: Trend = Trend.NEUTRAL
    timeframe: str = ""


class LiquidityZone(BaseModel):
    price: float
    volume: float
    type: ZoneType
    is_hunter_zone: bool = False


class VolumeNode(BaseModel):
    price: float
    volume: float


class VRVPResult(BaseModel):
    support_levels: list[float] = []  # descending, nearest below price first
    resistance_levels: list[float] = []  # ascending
    liquidity_zones: list[LiquidityZone] = []
    high_volume_nodes: list[VolumeNode] = []
    low_volume_zones: list[VolumeNode] = []

    def hunter_zone_near(self, price: float, proximity: float) -> LiquidityZone | None:
        """First hunter zone within `proximity` (fraction) of price, if any."""
        if price <= 0:
            return None
        for zone in self.liquidity_zones:
            if zone.is_hunter_zone and abs(zone.price - price) / price <= proximity:
                return zone
        return None


class MarketAnalysis(BaseModel):
    symbol: str
    timeframe: str
    current_price: float
    cvd: CVDResult
    volume: VolumeResult
    pattern: PatternResult
    vrvp: VRVPResult
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
