"""Per-kind event channels observed by storage and dashboard collaborators."""

from __future__ import annotations

import asyncio
import enum

import structlog

from futures_engine.models.messages import (
    EngineErrorMessage,
    ExecutionMessage,
    MarketTickMessage,
    SignalMessage,
    StreamMessage,
)
from futures_engine.models.signal import TradingSignal

logger = structlog.get_logger()


class EventKind(str, enum.Enum):
    TICK = "tick"
    SIGNAL = "signal"
    EXECUTION = "execution"
    ERROR = "error"


class EventChannels:
    """
    One bounded asyncio.Queue per event kind. Publishing never blocks the
    producer: when a channel is full its oldest message is discarded.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._queues: dict[EventKind, asyncio.Queue[StreamMessage]] = {
            kind: asyncio.Queue(maxsize=maxsize) for kind in EventKind
        }
        self.dropped: dict[EventKind, int] = {kind: 0 for kind in EventKind}

    def publish(self, kind: EventKind, message: StreamMessage) -> None:
        queue = self._queues[kind]
        if queue.full():
            queue.get_nowait()
            self.dropped[kind] += 1
            logger.warning("event_dropped", channel=kind.value, dropped=self.dropped[kind])
        queue.put_nowait(message)

    async def get(self, kind: EventKind) -> StreamMessage:
        return await self._queues[kind].get()

    def drain(self, kind: EventKind) -> list[StreamMessage]:
        """Everything currently queued on a channel, oldest first."""
        queue = self._queues[kind]
        items: list[StreamMessage] = []
        while not queue.empty():
            items.append(queue.get_nowait())
        return items

    def qsize(self, kind: EventKind) -> int:
        return self._queues[kind].qsize()

    # --- Typed helpers ---

    def emit_tick(self, symbol: str, payload: dict) -> None:
        self.publish(EventKind.TICK, MarketTickMessage(payload={"symbol": symbol, **payload}))

    def emit_signal(self, signal: TradingSignal) -> None:
        self.publish(EventKind.SIGNAL, SignalMessage(payload=signal.model_dump(mode="json")))

    def emit_execution(self, payload: dict) -> None:
        self.publish(EventKind.EXECUTION, ExecutionMessage(payload=payload))

    def emit_error(self, stage: str, error: BaseException, symbol: str | None = None) -> None:
        self.publish(
            EventKind.ERROR,
            EngineErrorMessage(
                payload={
                    "stage": stage,
                    "symbol": symbol,
                    "error_type": type(error).__name__,
                    "message": str(error),
                }
            ),
        )
