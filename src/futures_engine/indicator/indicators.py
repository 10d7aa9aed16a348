"""Technical indicator calculations using pandas-ta."""

from __future__ import annotations

import math

import pandas as pd
import pandas_ta as ta
import structlog

from futures_engine.models.indicator_set import (
    BollingerValues,
    IndicatorSet,
    MACDValues,
    StochasticValues,
)

logger = structlog.get_logger()

RSI_PERIOD = 14
MACD_FAST, MACD_SLOW, MACD_SIGNAL = 12, 26, 9
BB_PERIOD = 20
SMA_PERIOD = 20
STOCH_K, STOCH_D, STOCH_SMOOTH = 14, 3, 3
WILLR_PERIOD = 14
ATR_PERIOD = 14
EMA_PERIODS = (20, 50)


def _last(series: pd.Series | None) -> float | None:
    """Last finite value of a series, if any."""
    if series is None or series.empty:
        return None
    values = series.dropna()
    if values.empty:
        return None
    val = float(values.iloc[-1])
    return val if math.isfinite(val) else None


def _column(df: pd.DataFrame | None, prefix: str) -> pd.Series | None:
    if df is None or df.empty:
        return None
    for col in df.columns:
        if str(col).startswith(prefix):
            return df[col]
    return None


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


class IndicatorEngine:
    """
    RSI(14), MACD(12,26,9), SMA(20), EMA(20,50), BB(20,k), Stochastic(14,3,3),
    Williams %R(14), ATR(14), OBV over an OHLCV DataFrame.

    Any indicator without enough history keeps its neutral value (RSI 50,
    MACD 0, Bollinger flat at the last close); `is_warm` stays False until
    RSI, MACD and Bollinger are all real readings.
    """

    def __init__(self, bb_std: float = 2.0) -> None:
        self.bb_std = bb_std

    def compute(self, df: pd.DataFrame) -> IndicatorSet:
        if df.empty:
            return IndicatorSet()

        n = len(df)
        close = df["close"].astype(float)
        high = df["high"].astype(float)
        low = df["low"].astype(float)
        volume = df["volume"].astype(float)
        price = float(close.iloc[-1])

        neutral = IndicatorSet.neutral(price, sample_size=n)
        fields: dict = neutral.model_dump()
        warm = {"rsi": False, "macd": False, "bollinger": False}

        # RSI
        if n > RSI_PERIOD:
            rsi = _last(ta.rsi(close, length=RSI_PERIOD))
            if rsi is not None:
                fields["rsi"] = _clamp(rsi, 0.0, 100.0)
                warm["rsi"] = True

        # MACD
        if n >= MACD_SLOW + MACD_SIGNAL:
            macd_df = ta.macd(close, fast=MACD_FAST, slow=MACD_SLOW, signal=MACD_SIGNAL)
            line = _last(_column(macd_df, "MACD_"))
            hist = _last(_column(macd_df, "MACDh_"))
            sig = _last(_column(macd_df, "MACDs_"))
            if line is not None and hist is not None and sig is not None:
                fields["macd"] = MACDValues(line=line, signal=sig, histogram=hist)
                warm["macd"] = True

        # Moving averages
        if n >= SMA_PERIOD:
            sma = _last(ta.sma(close, length=SMA_PERIOD))
            if sma is not None:
                fields["moving_average"] = sma
        ema: dict[int, float] = {}
        for period in EMA_PERIODS:
            if n >= period:
                val = _last(ta.ema(close, length=period))
                if val is not None:
                    ema[period] = val
        fields["ema"] = ema

        # Bollinger Bands
        if n >= BB_PERIOD:
            bb = self._bollinger(close)
            if bb is not None:
                fields["bollinger"] = bb
                warm["bollinger"] = True

        # Stochastic
        if n >= STOCH_K + STOCH_D + STOCH_SMOOTH:
            stoch_df = ta.stoch(high, low, close, k=STOCH_K, d=STOCH_D, smooth_k=STOCH_SMOOTH)
            k = _last(_column(stoch_df, "STOCHk_"))
            d = _last(_column(stoch_df, "STOCHd_"))
            if k is not None and d is not None:
                fields["stochastic"] = StochasticValues(
                    k=_clamp(k, 0.0, 100.0), d=_clamp(d, 0.0, 100.0)
                )

        # Williams %R
        if n >= WILLR_PERIOD:
            willr = _last(ta.willr(high, low, close, length=WILLR_PERIOD))
            if willr is not None:
                fields["williams_r"] = _clamp(willr, -100.0, 0.0)

        # ATR
        if n > ATR_PERIOD:
            atr = _last(ta.atr(high, low, close, length=ATR_PERIOD))
            if atr is not None:
                fields["atr"] = max(atr, 0.0)

        # OBV
        if n >= 2:
            obv = _last(ta.obv(close, volume))
            if obv is not None:
                fields["obv"] = obv

        fields["is_warm"] = all(warm.values())
        return IndicatorSet.model_validate(fields)

    def _bollinger(self, close: pd.Series) -> BollingerValues | None:
        bb_df = ta.bbands(close, length=BB_PERIOD, std=self.bb_std)
        lower = _last(_column(bb_df, "BBL_"))
        middle = _last(_column(bb_df, "BBM_"))
        upper = _last(_column(bb_df, "BBU_"))
        if lower is None or middle is None or upper is None:
            return None
        # Float noise on a flat window can invert the bands by an ulp
        lower, middle, upper = sorted((lower, middle, upper))
        return BollingerValues(upper=upper, middle=middle, lower=lower)
