"""Per-symbol position lifecycle driven by confirmed venue responses."""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from futures_engine.errors import (
    CircuitOpenError,
    EmergencyStopActive,
    EngineError,
    OrderBelowMinimum,
    RiskLimitExceeded,
    ServiceDegraded,
    ValidationError,
    VenueRejected,
)
from futures_engine.models.order import OrderRequest
from futures_engine.models.position import ClosedPnl, Position, PositionSide, PositionStatus
from futures_engine.models.signal import SignalAction, TradingSignal
from futures_engine.risk.risk_manager import TradeProposal
from futures_engine.trade.order_validator import OrderValidator

if TYPE_CHECKING:
    from futures_engine.config import Settings
    from futures_engine.events import EventChannels
    from futures_engine.risk.risk_manager import RiskManager
    from futures_engine.trade.exchange_gateway import ExchangeGateway

logger = structlog.get_logger()

TRANSIENT_ERRORS = (ServiceDegraded, CircuitOpenError)
MAX_OPEN_CONFIRM_CHECKS = 3
# Venue and local clocks may disagree by this much when matching a closed-PnL record
CLOSED_PNL_CLOCK_SKEW = timedelta(seconds=5)


class SymbolState(enum.Enum):
    FLAT = "flat"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    ERROR = "error"


class ExecutionReport(BaseModel):
    symbol: str
    action: str  # none, hold, opened, pending, closing, closed, adopted, dropped, skipped, blocked, rejected, error
    state: str
    position: Position | None = None
    error: str | None = None
    detail: str = ""


class _SymbolBook:
    """Mutable per-symbol bookkeeping, only touched under `lock`."""

    def __init__(self) -> None:
        self.state = SymbolState.FLAT
        self.position: Position | None = None
        self.pending: OrderRequest | None = None
        self.order_id: str | None = None
        self.confirm_checks = 0
        self.close_reason: str | None = None
        self.close_order_ids: list[str] = []
        self.close_started_at: datetime | None = None
        self.last_error: str | None = None
        self.lock = asyncio.Lock()


class ExecutionCoordinator:
    """
    FLAT -> OPENING -> OPEN -> CLOSING -> FLAT, plus ERROR from OPENING or
    CLOSING on a venue rejection. ERROR blocks the symbol until clear_error().

    Transitions out of OPENING and CLOSING happen only after the venue's
    position list confirms them. Transient failures leave the transitional
    state in place and the next call re-checks the venue.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        risk_manager: RiskManager,
        events: EventChannels,
        validator: OrderValidator | None = None,
        min_entry_confidence: float = 60.0,
        settle_coin: str = "USDT",
        history_provider: Callable[[str], Sequence[float]] | None = None,
    ) -> None:
        self.gateway = gateway
        self.risk = risk_manager
        self.events = events
        self.validator = validator or OrderValidator()
        self.min_entry_confidence = min_entry_confidence
        self.settle_coin = settle_coin
        self.history_provider = history_provider
        self._books: dict[str, _SymbolBook] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        gateway: ExchangeGateway,
        risk_manager: RiskManager,
        events: EventChannels,
        history_provider: Callable[[str], Sequence[float]] | None = None,
    ) -> ExecutionCoordinator:
        return cls(
            gateway=gateway,
            risk_manager=risk_manager,
            events=events,
            min_entry_confidence=settings.MIN_ENTRY_CONFIDENCE,
            history_provider=history_provider,
        )

    def _book(self, symbol: str) -> _SymbolBook:
        book = self._books.get(symbol)
        if book is None:
            book = self._books[symbol] = _SymbolBook()
        return book

    def _set_state(self, symbol: str, new_state: SymbolState) -> None:
        book = self._book(symbol)
        old = book.state
        book.state = new_state
        logger.info("state_transition", symbol=symbol, old=old.value, new=new_state.value)

    def _report(self, symbol: str, action: str, error: str | None = None, detail: str = "") -> ExecutionReport:
        book = self._book(symbol)
        return ExecutionReport(
            symbol=symbol,
            action=action,
            state=book.state.value,
            position=book.position,
            error=error,
            detail=detail,
        )

    # --- Read side ---

    def state(self, symbol: str) -> SymbolState:
        return self._book(symbol).state

    def position(self, symbol: str) -> Position | None:
        return self._book(symbol).position

    def last_error(self, symbol: str) -> str | None:
        return self._book(symbol).last_error

    def open_positions(self) -> list[Position]:
        return [
            book.position
            for book in self._books.values()
            if book.position is not None and book.state in (SymbolState.OPEN, SymbolState.CLOSING)
        ]

    def committed_positions(self) -> list[Position]:
        """Open positions plus entries sent to the venue but not yet confirmed."""
        positions = self.open_positions()
        for symbol, book in self._books.items():
            pending = book.pending
            if book.state is not SymbolState.OPENING or pending is None:
                continue
            positions.append(
                Position(
                    symbol=symbol,
                    side=pending.side,
                    entry_price=pending.price or 0.0,
                    size=pending.qty,
                    leverage=pending.leverage,
                    stop_loss=pending.stop_loss,
                    take_profit=pending.take_profit,
                )
            )
        return positions

    # --- Entry point ---

    async def on_signal(
        self, symbol: str, signal: TradingSignal, price: float, atr: float = 0.0
    ) -> ExecutionReport:
        """Act on one signal. Orders for one symbol never overlap."""
        book = self._book(symbol)
        async with book.lock:
            if book.state is SymbolState.ERROR:
                return self._report(symbol, "skipped", detail="symbol in ERROR state, clear_error() required")
            if book.state is SymbolState.OPENING:
                return await self._confirm_open(symbol)
            if book.state is SymbolState.CLOSING:
                return await self._drive_close(symbol, price)
            if book.state is SymbolState.OPEN:
                return await self._manage_open(symbol, signal, price)
            if not signal.is_entry:
                return self._report(symbol, "none")
            return await self._open(symbol, signal, price, atr)

    # --- Opening ---

    async def _open(
        self, symbol: str, signal: TradingSignal, price: float, atr: float
    ) -> ExecutionReport:
        book = self._book(symbol)
        if signal.confidence < self.min_entry_confidence:
            return self._report(
                symbol,
                "skipped",
                detail=f"confidence {signal.confidence:.1f} below {self.min_entry_confidence:.1f}",
            )
        if self.risk.is_halted:
            return self._report(symbol, "blocked", error="emergency stop active")

        side = PositionSide.LONG if signal.action is SignalAction.LONG else PositionSide.SHORT

        try:
            balances = await self.gateway.get_balance()
        except EngineError as e:
            logger.warning("balance_unavailable", symbol=symbol, error=str(e))
            self.events.emit_error("execution", e, symbol=symbol)
            return self._report(symbol, "error", error=str(e))

        balance = balances.get(self.settle_coin)
        available = balance.available if balance else 0.0
        if balance is not None:
            self.risk.update_equity(balance.total)

        notional = self.risk.calculate_position_size(signal, available)
        leverage = self.risk.adjust_leverage(signal, atr, price)
        stop = self.risk.calculate_dynamic_stop_loss(price, side, atr)
        proposal = TradeProposal(
            symbol=symbol,
            side=side,
            entry_price=price,
            size=notional,
            leverage=leverage,
            stop_loss=stop,
        )
        try:
            self.risk.enforce(proposal, self.committed_positions(), self._price_history(symbol))
        except (RiskLimitExceeded, EmergencyStopActive) as e:
            logger.info("entry_blocked", symbol=symbol, reason=str(e))
            return self._report(symbol, "blocked", error=str(e))

        request = OrderRequest(
            symbol=symbol,
            side=side,
            qty=notional / price if price > 0 else 0.0,
            price=price,
            leverage=leverage,
            stop_loss=stop,
            take_profit=signal.take_profit,
            reasoning=list(signal.reasoning),
        )
        validation = self.validator.validate(request)
        if not validation.valid:
            return self._report(symbol, "rejected", error="; ".join(validation.errors))

        book.pending = request
        book.order_id = None
        book.confirm_checks = 0
        self._set_state(symbol, SymbolState.OPENING)

        try:
            result = await self.gateway.open_position(
                symbol,
                side,
                request.qty,
                leverage=request.leverage,
                client_order_id=request.client_order_id,
            )
        except VenueRejected as e:
            return self._fail(symbol, "open", e)
        except OrderBelowMinimum as e:
            book.pending = None
            self._set_state(symbol, SymbolState.FLAT)
            return self._report(symbol, "rejected", error=str(e))
        except ValidationError as e:
            # The venue may hold the order even though its answer was unreadable
            logger.warning("open_ack_unreadable", symbol=symbol, error=str(e))
            self.events.emit_error("execution", e, symbol=symbol)
            book.order_id = request.client_order_id
            return await self._confirm_open(symbol)
        except TRANSIENT_ERRORS as e:
            logger.warning("open_unconfirmed", symbol=symbol, error=str(e))
            self.events.emit_error("execution", e, symbol=symbol)
            return self._report(symbol, "pending", error=str(e))

        book.order_id = result.order_id
        logger.info(
            "position_opening",
            symbol=symbol,
            side=side.value,
            qty=request.qty,
            leverage=leverage,
            order_id=result.order_id,
        )
        return await self._confirm_open(symbol)

    async def _confirm_open(self, symbol: str) -> ExecutionReport:
        book = self._book(symbol)
        try:
            positions = await self.gateway.get_open_positions(symbol)
        except VenueRejected as e:
            return self._fail(symbol, "confirm_open", e)
        except TRANSIENT_ERRORS as e:
            return self._report(symbol, "pending", error=str(e))

        venue_pos = next((p for p in positions if p.symbol == symbol), None)
        if venue_pos is None:
            if book.order_id is None:
                # Never acknowledged and the venue shows nothing
                book.pending = None
                self._set_state(symbol, SymbolState.FLAT)
                return self._report(symbol, "none", detail="order not placed")
            book.confirm_checks += 1
            if book.confirm_checks >= MAX_OPEN_CONFIRM_CHECKS:
                return self._fail(
                    symbol,
                    "confirm_open",
                    EngineError(f"order {book.order_id} acknowledged but no position after {book.confirm_checks} checks"),
                )
            return self._report(symbol, "pending", detail="awaiting fill")

        pending = book.pending
        position = venue_pos.model_copy(
            update={
                "stop_loss": pending.stop_loss if pending and pending.stop_loss else venue_pos.stop_loss,
                "take_profit": pending.take_profit if pending and pending.take_profit else venue_pos.take_profit,
                "status": PositionStatus.OPEN,
            }
        )
        book.position = position
        book.pending = None
        book.order_id = None
        self._set_state(symbol, SymbolState.OPEN)
        await self._attach_protection(position)

        logger.info(
            "position_opened",
            symbol=symbol,
            side=position.side.value,
            entry=position.entry_price,
            size=position.size,
        )
        self.events.emit_execution(
            {"event": "position_opened", "position": position.model_dump(mode="json")}
        )
        return self._report(symbol, "opened")

    async def _attach_protection(self, position: Position) -> None:
        try:
            if position.stop_loss:
                await self.gateway.set_stop_loss(position.symbol, position.stop_loss)
            if position.take_profit:
                await self.gateway.set_take_profit(position.symbol, position.take_profit)
        except EngineError as e:
            # Local stop/target checks still apply
            logger.warning("protection_attach_failed", symbol=position.symbol, error=str(e))
            self.events.emit_error("execution", e, symbol=position.symbol)

    # --- Open position management ---

    async def _manage_open(
        self, symbol: str, signal: TradingSignal, price: float
    ) -> ExecutionReport:
        book = self._book(symbol)
        position = book.position
        if position is None:
            self._set_state(symbol, SymbolState.FLAT)
            return self._report(symbol, "none")

        reason = self._exit_reason(position, signal, price)
        if reason is None:
            book.position = position.model_copy(
                update={"mark_price": price, "unrealized_pnl": position.pnl_at(price)}
            )
            return self._report(symbol, "hold")

        book.close_reason = reason
        book.close_order_ids = []
        book.close_started_at = datetime.now(timezone.utc)
        book.position = position.model_copy(update={"status": PositionStatus.CLOSING})
        self._set_state(symbol, SymbolState.CLOSING)
        logger.info("position_closing", symbol=symbol, reason=reason, price=price)
        return await self._drive_close(symbol, price)

    def _exit_reason(self, position: Position, signal: TradingSignal, price: float) -> str | None:
        if self.risk.is_halted:
            return "emergency_stop"
        if signal.action is SignalAction.EXIT:
            return "exit_signal"
        if signal.is_entry:
            held = SignalAction.LONG if position.side is PositionSide.LONG else SignalAction.SHORT
            if signal.action is not held:
                return "opposing_signal"
        if position.side is PositionSide.LONG:
            if position.stop_loss and price <= position.stop_loss:
                return "stop_loss"
            if position.take_profit and price >= position.take_profit:
                return "take_profit"
        else:
            if position.stop_loss and price >= position.stop_loss:
                return "stop_loss"
            if position.take_profit and price <= position.take_profit:
                return "take_profit"
        return None

    # --- Closing ---

    async def _drive_close(self, symbol: str, price: float) -> ExecutionReport:
        """Send (or re-send) the reduce-only close and confirm against the venue."""
        book = self._book(symbol)
        try:
            result = await self.gateway.close_position(symbol)
            still_open = False
            if result is not None:
                if result.order_id:
                    book.close_order_ids.append(result.order_id)
                positions = await self.gateway.get_open_positions(symbol)
                still_open = any(p.symbol == symbol for p in positions)
        except VenueRejected as e:
            return self._fail(symbol, "close", e)
        except TRANSIENT_ERRORS as e:
            logger.warning("close_unconfirmed", symbol=symbol, error=str(e))
            self.events.emit_error("execution", e, symbol=symbol)
            return self._report(symbol, "closing", error=str(e))

        if still_open:
            return self._report(symbol, "closing", detail="awaiting close fill")

        position = book.position
        pnl = await self._realized_pnl(symbol, position, price)
        self.risk.record_realized_pnl(pnl)

        closed = position.model_copy(update={"status": PositionStatus.CLOSED}) if position else None
        reason = book.close_reason
        book.position = None
        book.close_reason = None
        book.close_order_ids = []
        book.close_started_at = None
        self._set_state(symbol, SymbolState.FLAT)

        logger.info("position_closed", symbol=symbol, reason=reason, pnl=pnl)
        self.events.emit_execution(
            {
                "event": "position_closed",
                "symbol": symbol,
                "reason": reason,
                "pnl": pnl,
                "position": closed.model_dump(mode="json") if closed else None,
            }
        )
        return self._report(symbol, "closed", detail=reason or "")

    async def _realized_pnl(self, symbol: str, position: Position | None, price: float) -> float:
        try:
            record = await self.gateway.get_closed_pnl(symbol)
        except EngineError as e:
            logger.warning("closed_pnl_unavailable", symbol=symbol, error=str(e))
            record = None
        if record is not None:
            if self._belongs_to_close(self._book(symbol), record):
                return record.closed_pnl
            logger.info("closed_pnl_stale", symbol=symbol, order_id=record.order_id)
        return position.pnl_at(price) if position else 0.0

    @staticmethod
    def _belongs_to_close(book: _SymbolBook, record: ClosedPnl) -> bool:
        """Match by close order id, else by a record written after the close began."""
        if record.order_id and book.close_order_ids:
            return record.order_id in book.close_order_ids
        if record.created_at is not None and book.close_started_at is not None:
            return record.created_at >= book.close_started_at - CLOSED_PNL_CLOCK_SKEW
        return False

    # --- Errors and recovery ---

    def _fail(self, symbol: str, stage: str, error: EngineError) -> ExecutionReport:
        book = self._book(symbol)
        book.last_error = str(error)
        book.pending = None
        self._set_state(symbol, SymbolState.ERROR)
        logger.error("execution_error", symbol=symbol, stage=stage, error=str(error))
        self.events.emit_error("execution", error, symbol=symbol)
        self.events.emit_execution(
            {"event": "execution_error", "symbol": symbol, "stage": stage, "error": str(error)}
        )
        return self._report(symbol, "error", error=str(error))

    async def clear_error(self, symbol: str) -> bool:
        """Manual recovery: ERROR -> FLAT. Run reconcile() afterwards to adopt a live position."""
        book = self._book(symbol)
        async with book.lock:
            if book.state is not SymbolState.ERROR:
                return False
            book.last_error = None
            book.pending = None
            book.order_id = None
            book.position = None
            book.close_reason = None
            book.close_order_ids = []
            book.close_started_at = None
            self._set_state(symbol, SymbolState.FLAT)
            return True

    async def reconcile(self, symbol: str) -> ExecutionReport:
        """Align local state with the venue's position list."""
        book = self._book(symbol)
        async with book.lock:
            positions = await self.gateway.get_open_positions(symbol)
            venue_pos = next((p for p in positions if p.symbol == symbol), None)

            if book.state is SymbolState.FLAT and venue_pos is not None:
                book.position = venue_pos
                self._set_state(symbol, SymbolState.OPEN)
                logger.info(
                    "position_adopted",
                    symbol=symbol,
                    side=venue_pos.side.value,
                    size=venue_pos.size,
                )
                return self._report(symbol, "adopted")

            if book.state is SymbolState.OPEN and venue_pos is None:
                book.position = None
                self._set_state(symbol, SymbolState.FLAT)
                logger.warning("position_missing_on_venue", symbol=symbol)
                return self._report(symbol, "dropped")

            if book.state is SymbolState.OPEN and venue_pos is not None:
                local = book.position
                book.position = venue_pos.model_copy(
                    update={
                        "stop_loss": venue_pos.stop_loss or (local.stop_loss if local else None),
                        "take_profit": venue_pos.take_profit or (local.take_profit if local else None),
                    }
                )
            return self._report(symbol, "none")

    def _price_history(self, symbol: str) -> dict[str, Sequence[float]]:
        if self.history_provider is None:
            return {}
        symbols = {symbol} | {p.symbol for p in self.committed_positions()}
        return {s: self.history_provider(s) for s in symbols}

    def snapshot(self, symbol: str) -> dict:
        book = self._book(symbol)
        return {
            "state": book.state.value,
            "position": book.position,
            "last_error": book.last_error,
        }
