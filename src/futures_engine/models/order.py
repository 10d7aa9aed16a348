"""OrderRequest, OrderResult Pydantic models."""

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from futures_engine.models.position import PositionSide


class OrderRequest(BaseModel):
    symbol: str
    side: PositionSide  # position direction the order opens
    order_type: str = "market"  # market, limit
    qty: float
    price: float | None = None  # limit price; reference price for market orders
    leverage: int = 1
    stop_loss: float | None = None
    take_profit: float | None = None
    reduce_only: bool = False
    client_order_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    reasoning: list[str] = []


class OrderResult(BaseModel):
    success: bool = True
    order_id: str = ""
    client_order_id: str = ""
    status: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
