"""OrderBook, MarketData and MarketSnapshot Pydantic models."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from futures_engine.models.candle import Candle
from futures_engine.models.indicator_set import IndicatorSet
from futures_engine.models.ticker import Ticker


class OrderBook(BaseModel):
    model_config = {"frozen": True}

    symbol: str = ""
    bids: list[tuple[float, float]] = []  # (price, qty), best first
    asks: list[tuple[float, float]] = []
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def best_bid(self) -> float | None:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0][0] if self.asks else None

    @property
    def spread(self) -> float:
        if not self.bids or not self.asks:
            return 0.0
        return self.asks[0][0] - self.bids[0][0]

    def ordering_errors(self) -> list[str]:
        """Empty when bids are non-increasing, asks non-decreasing and all levels positive."""
        errors: list[str] = []
        for side, levels in (("bid", self.bids), ("ask", self.asks)):
            for price, qty in levels:
                if price <= 0 or qty <= 0:
                    errors.append(f"{side} level ({price}, {qty}) must have positive price and qty")
                    break
        for prev, cur in zip(self.bids, self.bids[1:]):
            if cur[0] > prev[0]:
                errors.append(f"bids out of order: {cur[0]} after {prev[0]}")
                break
        for prev, cur in zip(self.asks, self.asks[1:]):
            if cur[0] < prev[0]:
                errors.append(f"asks out of order: {cur[0]} after {prev[0]}")
                break
        return errors


class MarketData(BaseModel):
    """One fetch from a market data source."""

    symbol: str
    price: float
    volume: float = 0.0
    ticker: Ticker
    order_book: OrderBook
    candles: list[Candle] = []
    indicators: IndicatorSet = IndicatorSet()
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MarketSnapshot(BaseModel):
    """Consistent read-only view handed to one decision cycle."""

    model_config = {"frozen": True}

    symbol: str
    timeframe: str
    price: float
    candles: tuple[Candle, ...] = ()
    order_book: OrderBook = OrderBook()
    indicators: IndicatorSet = IndicatorSet()
    ticker: Ticker | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
