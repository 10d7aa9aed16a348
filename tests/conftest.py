"""Shared builders and fixtures for futures-engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

from futures_engine.config import Settings
from futures_engine.events import EventChannels
from futures_engine.models.candle import Candle
from futures_engine.models.signal import RiskLevel, SignalAction, TradingSignal
from futures_engine.models.snapshot import OrderBook

BASE_TIME = datetime(2026, 1, 5, 0, 0, tzinfo=timezone.utc)


# --- Candle helpers ---


def _make_candle(
    ts: datetime | None = None,
    symbol: str = "ETHUSDT",
    timeframe: str = "1h",
    open_: float = 100.0,
    high: float | None = None,
    low: float | None = None,
    close: float = 102.0,
    volume: float = 1000.0,
    buy_volume: float | None = None,
    sell_volume: float | None = None,
) -> Candle:
    return Candle(
        time=ts or BASE_TIME,
        symbol=symbol,
        timeframe=timeframe,
        open=open_,
        high=high if high is not None else max(open_, close) + 1.0,
        low=low if low is not None else min(open_, close) - 1.0,
        close=close,
        volume=volume,
        buy_volume=buy_volume,
        sell_volume=sell_volume,
    )


def _make_series(closes: list[float], volume: float = 1000.0, symbol: str = "ETHUSDT") -> list[Candle]:
    """Hourly candles where each bar opens at the previous close."""
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        candles.append(
            _make_candle(
                ts=BASE_TIME + timedelta(hours=i),
                symbol=symbol,
                open_=prev,
                close=close,
                volume=volume,
            )
        )
        prev = close
    return candles


def _bearish_scenario(last_volume: float = 2.1e8, last_buy: float = 0.39e8) -> list[Candle]:
    """
    50 hourly candles: 49 mildly bearish bars of 1e8 volume, then a -2.5%
    bar. With the defaults CVD is -1.21e9 and the volume ratio 2.1x.
    """
    candles = [
        _make_candle(
            ts=BASE_TIME + timedelta(hours=i),
            open_=2001.0,
            high=2002.0,
            low=1999.0,
            close=2000.0,
            volume=1e8,
            buy_volume=0.39e8,
            sell_volume=0.61e8,
        )
        for i in range(49)
    ]
    candles.append(
        _make_candle(
            ts=BASE_TIME + timedelta(hours=49),
            open_=2000.0,
            high=2001.0,
            low=1948.0,
            close=1950.0,
            volume=last_volume,
            buy_volume=last_buy,
            sell_volume=last_volume - last_buy,
        )
    )
    return candles


# --- Order book helpers ---


def _make_order_book(
    price: float = 1950.0,
    depth: int = 20,
    qty: float = 5.0,
    step: float = 0.5,
    symbol: str = "ETHUSDT",
    bid_overrides: dict[int, float] | None = None,
    ask_overrides: dict[int, float] | None = None,
) -> OrderBook:
    bid_overrides = bid_overrides or {}
    ask_overrides = ask_overrides or {}
    bids = [(price - step * (i + 1), bid_overrides.get(i, qty)) for i in range(depth)]
    asks = [(price + step * (i + 1), ask_overrides.get(i, qty)) for i in range(depth)]
    return OrderBook(symbol=symbol, bids=bids, asks=asks, timestamp=BASE_TIME)


# --- Signal helpers ---


def _make_signal(
    action: SignalAction = SignalAction.LONG,
    confidence: float = 80.0,
    risk_level: RiskLevel = RiskLevel.LOW,
    entry_price: float = 2000.0,
    stop_loss: float | None = None,
    take_profit: float | None = None,
    symbol: str = "ETHUSDT",
) -> TradingSignal:
    if action is SignalAction.LONG:
        stop_loss = stop_loss if stop_loss is not None else entry_price * 0.98
        take_profit = take_profit if take_profit is not None else entry_price * 1.03
    elif action is SignalAction.SHORT:
        stop_loss = stop_loss if stop_loss is not None else entry_price * 1.02
        take_profit = take_profit if take_profit is not None else entry_price * 0.97
    return TradingSignal(
        symbol=symbol,
        action=action,
        confidence=confidence,
        entry_price=entry_price,
        stop_loss=stop_loss,
        take_profit=take_profit,
        risk_level=risk_level,
        reasoning=["test signal"],
    )


# --- DataFrame helpers ---


def _make_ohlcv_df(rows: int = 200, base_price: float = 100.0, seed: int = 42) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    dates = pd.date_range(end=BASE_TIME, periods=rows, freq="1h")
    close = base_price + np.cumsum(rng.standard_normal(rows) * 0.5)
    return pd.DataFrame(
        {
            "open": close + rng.standard_normal(rows) * 0.2,
            "high": close + np.abs(rng.standard_normal(rows) * 0.3) + 0.3,
            "low": close - np.abs(rng.standard_normal(rows) * 0.3) - 0.3,
            "close": close,
            "volume": np.abs(rng.standard_normal(rows) * 1000) + 500,
        },
        index=dates,
    )


# --- Fixtures ---


@pytest.fixture
def settings() -> Settings:
    return Settings(
        BYBIT_API_KEY="test-key",
        BYBIT_API_SECRET="test-secret",
        INSTRUMENTS=["ETHUSDT"],
        MARKET_DATA_SOURCE="synthetic",
        REDIS_FORWARD_EVENTS=False,
        AI_ENABLED=False,
    )


@pytest.fixture
def events() -> EventChannels:
    return EventChannels(maxsize=100)


@pytest.fixture
def bearish_candles() -> list[Candle]:
    return _bearish_scenario()


@pytest.fixture
def flat_book() -> OrderBook:
    return _make_order_book()


@pytest.fixture
def sample_df_200() -> pd.DataFrame:
    return _make_ohlcv_df(200)


@pytest.fixture
def sample_df_10() -> pd.DataFrame:
    return _make_ohlcv_df(10)
