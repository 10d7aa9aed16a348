"""Ticker and Tick Pydantic models."""

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class Ticker(BaseModel):
    symbol: str
    last: float
    bid: float = 0.0
    ask: float = 0.0
    volume_24h: float = 0.0
    change_24h: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Tick(BaseModel):
    """Single price/volume observation, validated by the ingestor."""

    symbol: str
    price: float
    volume: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stale: bool = False  # set when the timestamp is far from wall clock
