"""Market data ingestion: polling, validation and rolling history per symbol."""

from __future__ import annotations

import asyncio
import math
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from futures_engine.engine.schedule import FixedRateSchedule
from futures_engine.errors import EngineError, ValidationError
from futures_engine.indicator.candle_store import CandleStore, candles_to_dataframe
from futures_engine.indicator.indicators import IndicatorEngine
from futures_engine.models.indicator_set import IndicatorSet
from futures_engine.models.snapshot import MarketSnapshot, OrderBook
from futures_engine.models.ticker import Tick

if TYPE_CHECKING:
    from futures_engine.config import Settings
    from futures_engine.events import EventChannels
    from futures_engine.indicator.sources import MarketDataSource

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketDataIngestor:
    """
    Keeps a rolling candle and tick history per subscribed symbol.

    subscribe() fetches once (best effort), then polls every
    `update_interval` seconds on a fixed-rate grid. Each refresh validates
    the order book and the latest tick, merges candles, recomputes
    indicators and stores an immutable MarketSnapshot.
    """

    def __init__(
        self,
        source: MarketDataSource,
        events: EventChannels,
        candle_store: CandleStore | None = None,
        indicator_engine: IndicatorEngine | None = None,
        timeframe: str = "1h",
        kline_limit: int = 50,
        depth: int = 50,
        update_interval: float = 60.0,
        tick_history_limit: int = 500,
        staleness_seconds: float = 300.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if update_interval < 1.0:
            raise ValueError("update_interval must be at least 1 second")
        self.source = source
        self.events = events
        self.candle_store = candle_store or CandleStore()
        self.indicator_engine = indicator_engine or IndicatorEngine()
        self.timeframe = timeframe
        self.kline_limit = kline_limit
        self.depth = depth
        self.update_interval = update_interval
        self.tick_history_limit = tick_history_limit
        self.staleness_seconds = staleness_seconds
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}
        self._ticks: dict[str, deque[Tick]] = {}
        self._books: dict[str, OrderBook] = {}
        self._snapshots: dict[str, MarketSnapshot] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, source: MarketDataSource, events: EventChannels
    ) -> MarketDataIngestor:
        return cls(
            source=source,
            events=events,
            candle_store=CandleStore(max_candles=settings.CANDLE_HISTORY_LIMIT),
            timeframe=settings.TIMEFRAME,
            kline_limit=settings.KLINE_LIMIT,
            depth=settings.ORDERBOOK_DEPTH,
            update_interval=settings.UPDATE_INTERVAL_SECONDS,
            tick_history_limit=settings.TICK_HISTORY_LIMIT,
            staleness_seconds=settings.TICK_STALENESS_SECONDS,
        )

    @property
    def subscribed(self) -> set[str]:
        return set(self._tasks)

    # --- Subscription ---

    async def subscribe(self, symbol: str) -> None:
        """Initial fetch (failure logged only), then start periodic refresh."""
        if symbol in self._tasks:
            return
        self._ticks.setdefault(symbol, deque(maxlen=self.tick_history_limit))

        try:
            await self.refresh(symbol)
        except Exception as exc:
            logger.warning("initial_fetch_failed", symbol=symbol, error=str(exc))
            self.events.emit_error("ingest", exc, symbol=symbol)

        self._tasks[symbol] = asyncio.create_task(
            self._poll_loop(symbol), name=f"ingest-{symbol}"
        )
        logger.info("symbol_subscribed", symbol=symbol, interval=self.update_interval)

    async def unsubscribe(self, symbol: str) -> None:
        task = self._tasks.pop(symbol, None)
        if task is None:
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("symbol_unsubscribed", symbol=symbol)

    async def close(self) -> None:
        for symbol in list(self._tasks):
            await self.unsubscribe(symbol)

    async def _poll_loop(self, symbol: str) -> None:
        schedule = FixedRateSchedule(self.update_interval)
        while True:
            delay, skipped = schedule.advance()
            if skipped:
                logger.warning("ingest_cycle_overrun", symbol=symbol, skipped_slots=skipped)
            await asyncio.sleep(delay)
            try:
                await self.refresh(symbol)
            except EngineError as exc:
                logger.warning("ingest_refresh_failed", symbol=symbol, error=str(exc))
                self.events.emit_error("ingest", exc, symbol=symbol)
            except Exception as exc:
                logger.exception("ingest_cycle_error", symbol=symbol)
                self.events.emit_error("ingest", exc, symbol=symbol)

    # --- Refresh ---

    async def refresh(self, symbol: str) -> MarketSnapshot | None:
        """
        Pull one MarketData from the source and fold it into history.

        A malformed tick keeps the previous snapshot; a malformed order book
        keeps the previous book. Source errors propagate to the caller.
        """
        data = await self.source.fetch(symbol, self.timeframe, self.kline_limit, self.depth)

        self.candle_store.merge(symbol, data.candles)
        book = self._accept_order_book(symbol, data.order_book)

        tick = self.process_tick(
            Tick(
                symbol=symbol,
                price=data.price,
                volume=data.volume,
                timestamp=data.ticker.timestamp,
            ),
            emit=False,
        )
        if tick is None:
            return self._snapshots.get(symbol)

        candles = tuple(self.candle_store.get(symbol))
        if candles:
            indicators = self.indicator_engine.compute(candles_to_dataframe(candles))
        else:
            indicators = IndicatorSet.neutral(tick.price)

        snapshot = MarketSnapshot(
            symbol=symbol,
            timeframe=self.timeframe,
            price=tick.price,
            candles=candles,
            order_book=book,
            indicators=indicators,
            ticker=data.ticker,
            updated_at=self._clock(),
        )
        self._snapshots[symbol] = snapshot

        self.events.emit_tick(
            symbol,
            {
                "price": tick.price,
                "volume": tick.volume,
                "timestamp": tick.timestamp.isoformat(),
                "stale": tick.stale,
                "candles": len(candles),
                "indicators": indicators.model_dump(mode="json"),
            },
        )
        logger.debug(
            "market_data_refreshed",
            symbol=symbol,
            price=tick.price,
            candles=len(candles),
            warm=indicators.is_warm,
        )
        return snapshot

    def _accept_order_book(self, symbol: str, book: OrderBook) -> OrderBook:
        errors = book.ordering_errors()
        if not errors:
            self._books[symbol] = book
            return book
        logger.warning("orderbook_dropped", symbol=symbol, errors=errors)
        self.events.emit_error(
            "ingest", ValidationError("; ".join(errors)), symbol=symbol
        )
        return self._books.get(symbol, OrderBook(symbol=symbol))

    # --- Ticks ---

    def process_tick(self, tick: Tick, emit: bool = True) -> Tick | None:
        """
        Validate and record one tick. Returns the stored tick (possibly
        flagged stale) or None when it was dropped.
        """
        if not math.isfinite(tick.price) or tick.price <= 0:
            return self._reject_tick(tick, f"price must be positive, got {tick.price}")
        if not math.isfinite(tick.volume) or tick.volume < 0:
            return self._reject_tick(tick, f"volume must be non-negative, got {tick.volume}")

        ts = tick.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        skew = abs((self._clock() - ts).total_seconds())
        if skew > self.staleness_seconds:
            tick = tick.model_copy(update={"timestamp": ts, "stale": True})
            logger.warning("stale_tick", symbol=tick.symbol, skew_seconds=round(skew, 1))

        history = self._ticks.setdefault(tick.symbol, deque(maxlen=self.tick_history_limit))
        history.append(tick)

        if emit:
            self.events.emit_tick(
                tick.symbol,
                {
                    "price": tick.price,
                    "volume": tick.volume,
                    "timestamp": tick.timestamp.isoformat(),
                    "stale": tick.stale,
                },
            )
        return tick

    def _reject_tick(self, tick: Tick, reason: str) -> None:
        logger.warning("tick_dropped", symbol=tick.symbol, reason=reason)
        self.events.emit_error("ingest", ValidationError(reason), symbol=tick.symbol)
        return None

    # --- Read side ---

    def snapshot(self, symbol: str) -> MarketSnapshot | None:
        return self._snapshots.get(symbol)

    def ticks(self, symbol: str) -> list[Tick]:
        return list(self._ticks.get(symbol, ()))
