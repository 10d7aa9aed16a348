"""In-memory rolling candle history per symbol."""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable
from typing import TYPE_CHECKING

import pandas as pd
import structlog

if TYPE_CHECKING:
    from futures_engine.models.candle import Candle

logger = structlog.get_logger()

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]


def candles_to_dataframe(candles: Iterable[Candle]) -> pd.DataFrame:
    """
    Convert candles to pandas DataFrame for pandas-ta:
    columns: ['open', 'high', 'low', 'close', 'volume']
    index: DatetimeIndex
    """
    candles = list(candles)
    if not candles:
        return pd.DataFrame(columns=OHLCV_COLUMNS)
    data = [
        {
            "open": c.open,
            "high": c.high,
            "low": c.low,
            "close": c.close,
            "volume": c.volume,
        }
        for c in candles
    ]
    return pd.DataFrame(data, index=pd.DatetimeIndex([c.time for c in candles]))


class CandleStore:
    """
    Bounded candle history using deque (FIFO, max_candles per symbol).

    Structure: candles[symbol] = deque([Candle, ...]), oldest first.
    """

    def __init__(self, max_candles: int = 200) -> None:
        self.max_candles = max_candles
        self.candles: dict[str, deque[Candle]] = defaultdict(lambda: deque(maxlen=max_candles))

    def merge(self, symbol: str, candles: Iterable[Candle]) -> int:
        """
        Fold a fetched window into the history. A bar with the same open time
        as the newest stored bar replaces it (the in-progress bar keeps
        updating); older bars are ignored. Returns the number of new bars.
        """
        dq = self.candles[symbol]
        added = 0
        for candle in sorted(candles, key=lambda c: c.time):
            if dq and candle.time < dq[-1].time:
                continue
            if dq and candle.time == dq[-1].time:
                dq[-1] = candle
                continue
            dq.append(candle)
            added += 1
        if added:
            logger.debug("candles_merged", symbol=symbol, added=added, total=len(dq))
        return added

    def get(self, symbol: str, limit: int | None = None) -> list[Candle]:
        """Get last N candles (all when limit is None)."""
        dq = self.candles.get(symbol)
        if not dq:
            return []
        items = list(dq)
        return items[-limit:] if limit else items

    def get_latest(self, symbol: str) -> Candle | None:
        dq = self.candles.get(symbol)
        if not dq:
            return None
        return dq[-1]

    def get_as_dataframe(self, symbol: str, limit: int | None = None) -> pd.DataFrame:
        return candles_to_dataframe(self.get(symbol, limit))

    def clear(self, symbol: str) -> None:
        self.candles.pop(symbol, None)
