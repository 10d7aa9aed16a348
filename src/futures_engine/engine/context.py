"""Engine context: builds and owns every component for one session."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from futures_engine.engine.trading_loop import TradingLoop
from futures_engine.errors import EngineError
from futures_engine.events import EventChannels
from futures_engine.indicator.advanced_analytics import AdvancedAnalytics
from futures_engine.indicator.ingestor import MarketDataIngestor
from futures_engine.indicator.sources import build_market_data_source
from futures_engine.models.status import EngineStatus, SymbolStatus
from futures_engine.redis_client import RedisEventForwarder
from futures_engine.risk.risk_manager import RiskManager
from futures_engine.strategy.ai_advisor import AIAdvisor
from futures_engine.strategy.signal_generator import SignalGenerator
from futures_engine.trade.circuit_breaker import CircuitBreaker
from futures_engine.trade.exchange_gateway import ExchangeGateway
from futures_engine.trade.execution_coordinator import ExecutionCoordinator
from futures_engine.trade.rate_limiter import RateLimiter

if TYPE_CHECKING:
    from futures_engine.config import Settings
    from futures_engine.indicator.sources import MarketDataSource

logger = structlog.get_logger()


class EngineContext:
    """
    Constructed once at startup and passed to whoever needs the engine.
    Collaborators (gateway, market data source, advisor, forwarder) can be
    injected; anything not injected is built from Settings.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: ExchangeGateway | None = None,
        source: MarketDataSource | None = None,
        advisor: AIAdvisor | None = None,
        forwarder: RedisEventForwarder | None = None,
    ) -> None:
        self.settings = settings
        self.running = False
        self.events = EventChannels(maxsize=settings.EVENT_QUEUE_SIZE)

        if gateway is None:
            rate_limiter = RateLimiter(
                capacity=settings.RATE_LIMIT_CAPACITY,
                window_ms=settings.RATE_LIMIT_WINDOW_MS,
            )
            circuit_breaker = CircuitBreaker(
                failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
                reset_ms=settings.CIRCUIT_RESET_MS,
            )
            gateway = ExchangeGateway.from_settings(settings, rate_limiter, circuit_breaker)
        self.gateway = gateway

        self.source = source or build_market_data_source(settings, gateway)
        self.ingestor = MarketDataIngestor.from_settings(settings, self.source, self.events)
        self.analytics = AdvancedAnalytics(settings.analytics_config())
        self.signal_generator = SignalGenerator.from_settings(settings)
        self.risk_manager = RiskManager(settings.risk_config())
        self.coordinator = ExecutionCoordinator.from_settings(
            settings,
            gateway,
            self.risk_manager,
            self.events,
            history_provider=self._closes,
        )

        if advisor is None and settings.AI_ENABLED:
            advisor = AIAdvisor(settings)
        self.advisor = advisor

        if forwarder is None and settings.REDIS_FORWARD_EVENTS:
            forwarder = RedisEventForwarder(self.events, redis_url=settings.REDIS_URL)
        self.forwarder = forwarder

        self.loops: dict[str, TradingLoop] = {
            symbol: TradingLoop(
                symbol=symbol,
                ingestor=self.ingestor,
                analytics=self.analytics,
                signal_generator=self.signal_generator,
                coordinator=self.coordinator,
                events=self.events,
                advisor=self.advisor,
                interval=settings.DECISION_CYCLE_SECONDS,
            )
            for symbol in settings.INSTRUMENTS
        }

    def _closes(self, symbol: str) -> list[float]:
        return [c.close for c in self.ingestor.candle_store.get(symbol)]

    async def start(self) -> None:
        """Reconcile positions, subscribe market data, start one loop per symbol."""
        if self.running:
            return
        self.running = True
        logger.info(
            "engine_starting",
            instruments=self.settings.INSTRUMENTS,
            source=self.source.name,
        )

        if self.forwarder is not None:
            await self.forwarder.connect()
            self.forwarder.start()

        for symbol in self.settings.INSTRUMENTS:
            try:
                await self.coordinator.reconcile(symbol)
            except EngineError as e:
                logger.warning("reconcile_failed", symbol=symbol, error=str(e))
                self.events.emit_error("reconcile", e, symbol=symbol)
            await self.ingestor.subscribe(symbol)
            self.loops[symbol].start()

        logger.info("engine_started")

    async def stop(self) -> None:
        """Stop loops after their current cycle, then release connections. Idempotent."""
        if not self.running:
            return
        self.running = False
        for loop in self.loops.values():
            await loop.stop()
        await self.ingestor.close()
        if self.forwarder is not None:
            await self.forwarder.stop()
            await self.forwarder.disconnect()
        if self.advisor is not None:
            await self.advisor.aclose()
        await self.gateway.aclose()
        logger.info("engine_stopped")

    # --- Operator controls ---

    def emergency_stop(self, reason: str = "manual") -> bool:
        return self.risk_manager.emergency_stop(reason)

    def clear_emergency_stop(self) -> None:
        self.risk_manager.clear_emergency_stop()

    async def clear_error(self, symbol: str) -> bool:
        return await self.coordinator.clear_error(symbol)

    # --- Dashboard snapshot ---

    def status(self) -> EngineStatus:
        symbols = {}
        for symbol in self.settings.INSTRUMENTS:
            exec_state = self.coordinator.snapshot(symbol)
            loop = self.loops.get(symbol)
            symbols[symbol] = SymbolStatus(
                symbol=symbol,
                state=exec_state["state"],
                position=exec_state["position"],
                last_signal=loop.last_signal if loop else None,
                last_error=exec_state["last_error"],
            )
        return EngineStatus(
            running=self.running,
            symbols=symbols,
            open_positions=self.coordinator.open_positions(),
            circuit_breaker=self.gateway.circuit_breaker.state.value,
            emergency_stop=self.risk_manager.is_halted,
            risk=self.risk_manager.status(),
        )
