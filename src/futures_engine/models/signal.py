"""TradingSignal and AIRecommendation Pydantic models."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


class SignalAction(str, enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    HOLD = "HOLD"
    EXIT = "EXIT"


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


class TradingSignal(BaseModel):
    """One decision per symbol per tick. Superseded, never mutated."""

    model_config = {"frozen": True}

    symbol: str
    action: SignalAction
    confidence: float = Field(ge=0.0, le=100.0)
    entry_price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    risk_level: RiskLevel
    reasoning: list[str] = Field(min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_entry(self) -> bool:
        return self.action in (SignalAction.LONG, SignalAction.SHORT)


_ACTION_ALIASES = {
    "BUY": "LONG",
    "OPEN_LONG": "LONG",
    "SELL": "SHORT",
    "OPEN_SHORT": "SHORT",
    "CLOSE": "EXIT",
}


class AIRecommendation(BaseModel):
    """Structured answer from the external AI advisor."""

    model_config = {"populate_by_name": True}

    action: SignalAction = SignalAction.HOLD
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    target_price: float | None = Field(None, alias="targetPrice")
    stop_loss: float | None = Field(None, alias="stopLoss")
    reasoning: str = ""

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, v: object) -> object:
        if isinstance(v, str):
            upper = v.strip().upper()
            return _ACTION_ALIASES.get(upper, upper)
        return v
