"""Bybit v5 response schemas.

Venue payloads are decoded here and nowhere else. Numbers arrive as
strings (sometimes empty), so every numeric field goes through VenueFloat.
"""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, BeforeValidator, Field


def _blank_to_zero(v: object) -> object:
    if v is None or v == "":
        return 0.0
    return v


VenueFloat = Annotated[float, BeforeValidator(_blank_to_zero)]
VenueDict = Annotated[dict, BeforeValidator(lambda v: v or {})]


class VenueEnvelope(BaseModel):
    retCode: int
    retMsg: str = ""
    result: VenueDict = {}
    time: int | None = None


class TickerRow(BaseModel):
    symbol: str
    lastPrice: VenueFloat
    bid1Price: VenueFloat = 0.0
    ask1Price: VenueFloat = 0.0
    volume24h: VenueFloat = 0.0
    price24hPcnt: VenueFloat = 0.0


class TickerList(BaseModel):
    rows: list[TickerRow] = Field(default=[], alias="list")


class OrderBookResult(BaseModel):
    s: str
    b: list[tuple[VenueFloat, VenueFloat]] = []
    a: list[tuple[VenueFloat, VenueFloat]] = []
    ts: int | None = None


KlineRow = tuple[int, VenueFloat, VenueFloat, VenueFloat, VenueFloat, VenueFloat, VenueFloat]


class KlineResult(BaseModel):
    symbol: str = ""
    # [startTime, open, high, low, close, volume, turnover], newest first
    rows: list[KlineRow] = Field(default=[], alias="list")


class CoinRow(BaseModel):
    coin: str
    equity: VenueFloat = 0.0
    walletBalance: VenueFloat = 0.0
    availableToWithdraw: VenueFloat = 0.0
    locked: VenueFloat = 0.0


class WalletAccount(BaseModel):
    accountType: str = ""
    coin: list[CoinRow] = []


class WalletResult(BaseModel):
    rows: list[WalletAccount] = Field(default=[], alias="list")


class LotSizeFilter(BaseModel):
    qtyStep: VenueFloat = 0.001
    minOrderQty: VenueFloat = 0.001


class PriceFilter(BaseModel):
    tickSize: VenueFloat = 0.01


class LeverageFilter(BaseModel):
    maxLeverage: VenueFloat = 100.0


class InstrumentRow(BaseModel):
    symbol: str
    lotSizeFilter: LotSizeFilter = LotSizeFilter()
    priceFilter: PriceFilter = PriceFilter()
    leverageFilter: LeverageFilter = LeverageFilter()


class InstrumentList(BaseModel):
    rows: list[InstrumentRow] = Field(default=[], alias="list")


class PositionRow(BaseModel):
    symbol: str
    side: str = ""  # Buy, Sell, or "" when flat
    size: VenueFloat = 0.0
    avgPrice: VenueFloat = 0.0
    markPrice: VenueFloat = 0.0
    leverage: VenueFloat = 1.0
    unrealisedPnl: VenueFloat = 0.0
    stopLoss: VenueFloat = 0.0
    takeProfit: VenueFloat = 0.0
    createdTime: str = ""


class PositionList(BaseModel):
    rows: list[PositionRow] = Field(default=[], alias="list")


class OrderAck(BaseModel):
    orderId: str
    orderLinkId: str = ""


class ClosedPnlRow(BaseModel):
    symbol: str
    orderId: str = ""
    closedPnl: VenueFloat = 0.0
    avgEntryPrice: VenueFloat = 0.0
    avgExitPrice: VenueFloat = 0.0
    qty: VenueFloat = 0.0
    createdTime: str = ""


class ClosedPnlList(BaseModel):
    rows: list[ClosedPnlRow] = Field(default=[], alias="list")
