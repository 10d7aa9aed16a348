"""IndicatorSet (RSI, MACD, BB, etc.) Pydantic models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class MACDValues(BaseModel):
    line: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


class BollingerValues(BaseModel):
    upper: float = 0.0
    middle: float = 0.0
    lower: float = 0.0


class StochasticValues(BaseModel):
    k: float = Field(50.0, ge=0.0, le=100.0)
    d: float = Field(50.0, ge=0.0, le=100.0)


class IndicatorSet(BaseModel):
    rsi: float = Field(50.0, ge=0.0, le=100.0)
    macd: MACDValues = MACDValues()
    moving_average: float = 0.0
    ema: dict[int, float] = {}
    bollinger: BollingerValues = BollingerValues()
    stochastic: StochasticValues = StochasticValues()
    williams_r: float = Field(-50.0, ge=-100.0, le=0.0)
    atr: float = Field(0.0, ge=0.0)
    obv: float = 0.0
    sample_size: int = 0
    is_warm: bool = False  # False while any indicator still sits on its neutral default

    @classmethod
    def neutral(cls, price: float, sample_size: int = 0) -> IndicatorSet:
        """Neutral readings centred on the current price."""
        return cls(
            moving_average=price,
            bollinger=BollingerValues(upper=price, middle=price, lower=price),
            sample_size=sample_size,
        )
