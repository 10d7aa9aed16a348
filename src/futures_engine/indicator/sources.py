"""Market data sources: live venue or seeded synthetic random walk."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Protocol

import numpy as np
import structlog

from futures_engine.models.candle import Candle
from futures_engine.models.indicator_set import IndicatorSet
from futures_engine.models.snapshot import MarketData, OrderBook
from futures_engine.models.ticker import Ticker

if TYPE_CHECKING:
    from futures_engine.config import Settings
    from futures_engine.trade.exchange_gateway import ExchangeGateway

logger = structlog.get_logger()

TIMEFRAME_SECONDS = {
    "1m": 60,
    "3m": 180,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "2h": 7200,
    "4h": 14400,
    "6h": 21600,
    "12h": 43200,
    "1d": 86400,
    "1w": 604800,
}


class MarketDataSource(Protocol):
    name: str

    async def fetch(self, symbol: str, timeframe: str, limit: int, depth: int) -> MarketData: ...


class LiveMarketDataSource:
    name = "live"

    def __init__(self, gateway: ExchangeGateway) -> None:
        self.gateway = gateway

    async def fetch(self, symbol: str, timeframe: str, limit: int, depth: int) -> MarketData:
        return await self.gateway.get_market_data(
            symbol, timeframe=timeframe, kline_limit=limit, depth=depth
        )


class SyntheticMarketDataSource:
    """
    Geometric random walk with taker-side volume split and a symmetric
    order book. Every fetch closes one more bar. Deterministic for a seed.
    """

    name = "synthetic"

    def __init__(
        self,
        seed: int = 42,
        base_price: float = 2000.0,
        volatility: float = 0.004,
        base_volume: float = 1_000.0,
        clock=None,
    ) -> None:
        self.base_price = base_price
        self.volatility = volatility
        self.base_volume = base_volume
        self._rng = np.random.default_rng(seed)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._history: dict[str, list[Candle]] = {}

    async def fetch(self, symbol: str, timeframe: str, limit: int, depth: int) -> MarketData:
        bars = self._history.get(symbol)
        if bars is None:
            bars = self._seed_history(symbol, timeframe, limit)
            self._history[symbol] = bars
        else:
            bars.append(self._next_bar(bars[-1], timeframe))
            del bars[: max(0, len(bars) - limit)]

        last = bars[-1]
        book = self._order_book(symbol, last.close, depth)
        ticker = Ticker(
            symbol=symbol,
            last=last.close,
            bid=book.bids[0][0],
            ask=book.asks[0][0],
            volume_24h=float(sum(c.volume for c in bars[-24:])),
            change_24h=(last.close / bars[0].open - 1.0) * 100,
        )
        return MarketData(
            symbol=symbol,
            price=last.close,
            volume=ticker.volume_24h,
            ticker=ticker,
            order_book=book,
            candles=list(bars),
            indicators=IndicatorSet.neutral(last.close),
        )

    def _seed_history(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        step = timedelta(seconds=TIMEFRAME_SECONDS.get(timeframe, 3600))
        start = self._clock() - step * limit
        bars: list[Candle] = []
        prev_close = self.base_price
        for i in range(limit):
            bar = self._make_bar(symbol, timeframe, start + step * i, prev_close)
            bars.append(bar)
            prev_close = bar.close
        return bars

    def _next_bar(self, prev: Candle, timeframe: str) -> Candle:
        step = timedelta(seconds=TIMEFRAME_SECONDS.get(timeframe, 3600))
        return self._make_bar(prev.symbol, timeframe, prev.time + step, prev.close)

    def _make_bar(self, symbol: str, timeframe: str, ts: datetime, open_: float) -> Candle:
        ret = float(self._rng.normal(0.0, self.volatility))
        close = open_ * (1.0 + ret)
        wick = abs(float(self._rng.normal(0.0, self.volatility / 2)))
        high = max(open_, close) * (1.0 + wick)
        low = min(open_, close) * (1.0 - wick)
        volume = self.base_volume * float(self._rng.lognormal(0.0, 0.4))
        buy_share = float(np.clip(0.5 + ret * 25.0, 0.05, 0.95))
        return Candle(
            time=ts,
            symbol=symbol,
            timeframe=timeframe,
            open=round(open_, 2),
            high=round(high, 2),
            low=round(low, 2),
            close=round(close, 2),
            volume=round(volume, 4),
            buy_volume=round(volume * buy_share, 4),
            sell_volume=round(volume * (1.0 - buy_share), 4),
        )

    def _order_book(self, symbol: str, price: float, depth: int) -> OrderBook:
        tick = price * 0.0005
        sizes = self._rng.uniform(4.0, 10.0, size=(2, depth))
        bids = [(round(price - tick * (i + 1), 6), round(float(sizes[0][i]), 3)) for i in range(depth)]
        asks = [(round(price + tick * (i + 1), 6), round(float(sizes[1][i]), 3)) for i in range(depth)]
        return OrderBook(symbol=symbol, bids=bids, asks=asks, timestamp=self._clock())


def build_market_data_source(
    settings: Settings, gateway: ExchangeGateway | None = None
) -> MarketDataSource:
    if settings.MARKET_DATA_SOURCE == "synthetic":
        logger.info("market_data_source_selected", source="synthetic", seed=settings.SYNTHETIC_SEED)
        return SyntheticMarketDataSource(
            seed=settings.SYNTHETIC_SEED, base_price=settings.SYNTHETIC_BASE_PRICE
        )
    if gateway is None:
        raise ValueError("live market data source requires an exchange gateway")
    logger.info("market_data_source_selected", source="live")
    return LiveMarketDataSource(gateway)
