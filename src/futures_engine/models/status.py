"""Read-only engine status for the dashboard collaborator."""

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from futures_engine.models.position import Position
from futures_engine.models.signal import TradingSignal


class SymbolStatus(BaseModel):
    symbol: str
    state: str
    position: Position | None = None
    last_signal: TradingSignal | None = None
    last_error: str | None = None


class EngineStatus(BaseModel):
    running: bool = False
    symbols: dict[str, SymbolStatus] = {}
    open_positions: list[Position] = []
    circuit_breaker: str = "closed"
    emergency_stop: bool = False
    risk: dict = {}
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
