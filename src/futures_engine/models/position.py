"""Position, balance and venue reference-data Pydantic models."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class PositionSide(str, enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> PositionSide:
        return PositionSide.SHORT if self is PositionSide.LONG else PositionSide.LONG

    @property
    def order_side(self) -> str:
        """Venue order side that opens this position."""
        return "Buy" if self is PositionSide.LONG else "Sell"


class PositionStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class Position(BaseModel):
    symbol: str
    side: PositionSide
    entry_price: float
    size: float
    leverage: float = 1.0
    stop_loss: float | None = None
    take_profit: float | None = None
    status: PositionStatus = PositionStatus.OPEN
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def pnl_at(self, price: float) -> float:
        direction = 1.0 if self.side is PositionSide.LONG else -1.0
        return (price - self.entry_price) * self.size * direction


class AssetBalance(BaseModel):
    asset: str
    available: float = 0.0
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.available + self.locked


class InstrumentInfo(BaseModel):
    symbol: str
    qty_step: float = 0.001
    min_qty: float = 0.001
    tick_size: float = 0.01
    max_leverage: float = 100.0


class ClosedPnl(BaseModel):
    symbol: str
    order_id: str = ""
    closed_pnl: float = 0.0
    avg_entry_price: float = 0.0
    avg_exit_price: float = 0.0
    qty: float = 0.0
    created_at: datetime | None = None
