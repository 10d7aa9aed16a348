"""OHLCV Pydantic model."""

from datetime import datetime

from pydantic import BaseModel


class Candle(BaseModel):
    model_config = {"frozen": True}

    time: datetime  # bar open time, UTC
    symbol: str
    timeframe: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    # Taker-side split, only when the source reports it
    buy_volume: float | None = None
    sell_volume: float | None = None
