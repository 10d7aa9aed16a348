"""Per-symbol decision loop: snapshot -> analytics -> signal -> execution."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from futures_engine.engine.schedule import FixedRateSchedule

if TYPE_CHECKING:
    from futures_engine.events import EventChannels
    from futures_engine.indicator.advanced_analytics import AdvancedAnalytics
    from futures_engine.indicator.ingestor import MarketDataIngestor
    from futures_engine.models.signal import TradingSignal
    from futures_engine.strategy.ai_advisor import AIAdvisor
    from futures_engine.strategy.signal_generator import SignalGenerator
    from futures_engine.trade.execution_coordinator import ExecutionCoordinator, ExecutionReport

logger = structlog.get_logger()


class TradingLoop:
    """
    Runs one decision cycle per `interval` seconds for a single symbol.

    Every stage of a cycle reads the same immutable MarketSnapshot. stop()
    never cancels a cycle in flight: it wakes the inter-cycle wait and
    waits for the current cycle to finish, so an order placement always
    gets its venue response.
    """

    def __init__(
        self,
        symbol: str,
        ingestor: MarketDataIngestor,
        analytics: AdvancedAnalytics,
        signal_generator: SignalGenerator,
        coordinator: ExecutionCoordinator,
        events: EventChannels,
        advisor: AIAdvisor | None = None,
        interval: float = 60.0,
    ) -> None:
        self.symbol = symbol
        self.ingestor = ingestor
        self.analytics = analytics
        self.signal_generator = signal_generator
        self.coordinator = coordinator
        self.events = events
        self.advisor = advisor
        self.interval = interval
        self.running = False
        self.cycles = 0
        self.last_signal: TradingSignal | None = None
        self.last_report: ExecutionReport | None = None
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the loop background task. No-op when already running."""
        if self.running:
            return
        self.running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=f"trading-loop-{self.symbol}")
        logger.info("trading_loop_started", symbol=self.symbol, interval=self.interval)

    async def stop(self) -> None:
        """Stop after the current cycle. A second call is a no-op."""
        if not self.running:
            return
        self.running = False
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            await task
        logger.info("trading_loop_stopped", symbol=self.symbol, cycles=self.cycles)

    async def _run_loop(self) -> None:
        schedule = FixedRateSchedule(self.interval)
        while self.running:
            await self.run_cycle()
            if not self.running:
                break
            delay, skipped = schedule.advance()
            if skipped:
                logger.warning("decision_cycle_overrun", symbol=self.symbol, skipped_slots=skipped)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self) -> TradingSignal | None:
        """One decision cycle. Failures are logged and reported, never raised."""
        self.cycles += 1
        try:
            return await self._cycle()
        except Exception as e:
            logger.exception("cycle_error", symbol=self.symbol)
            self.events.emit_error("trading_loop", e, symbol=self.symbol)
            return None

    async def _cycle(self) -> TradingSignal | None:
        snapshot = self.ingestor.snapshot(self.symbol)
        if snapshot is None or not snapshot.candles:
            logger.info("cycle_skipped_no_data", symbol=self.symbol)
            return None

        analysis = self.analytics.analyze(
            self.symbol,
            snapshot.candles,
            snapshot.order_book,
            timeframe=snapshot.timeframe,
            current_price=snapshot.price,
        )

        ai = None
        if self.advisor is not None:
            ai = await self.advisor.recommend(snapshot, analysis)

        held = self.coordinator.position(self.symbol)
        signal = self.signal_generator.generate(
            analysis,
            snapshot.indicators,
            ai=ai,
            held_side=held.side if held else None,
        )
        self.last_signal = signal
        self.events.emit_signal(signal)

        report = await self.coordinator.on_signal(
            self.symbol, signal, snapshot.price, atr=snapshot.indicators.atr
        )
        self.last_report = report
        logger.info(
            "cycle_complete",
            symbol=self.symbol,
            action=signal.action.value,
            confidence=round(signal.confidence, 1),
            execution=report.action,
            state=report.state,
        )
        return signal
