"""Core indicator functions: pure computations on OHLCV data.

Scalars come back as floats; composite indicators (macd, stoch, bollinger)
come back as dicts of floats.
"""

from __future__ import annotations

from typing import Callable, Union

import numpy as np
import pandas as pd

IndicatorValue = Union[float, dict[str, float]]


def ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False).mean()


def sma(series: pd.Series, period: int) -> pd.Series:
    return series.rolling(window=period).mean()


def rsi(series: pd.Series, period: int = 14) -> float:
    delta = series.diff()
    gain = delta.where(delta > 0, 0.0)
    loss = -delta.where(delta < 0, 0.0)
    avg_gain = float(gain.rolling(window=period).mean().iloc[-1])
    avg_loss = float(loss.rolling(window=period).mean().iloc[-1])
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def macd(series: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> dict[str, float]:
    macd_line = ema(series, fast) - ema(series, slow)
    signal_line = macd_line.ewm(span=signal, adjust=False).mean()
    histogram = macd_line - signal_line
    return {
        "macd": float(macd_line.iloc[-1]),
        "signal": float(signal_line.iloc[-1]),
        "histogram": float(histogram.iloc[-1]),
    }


def bollinger(series: pd.Series, period: int = 20, std: float = 2.0) -> dict[str, float]:
    middle = series.rolling(period).mean()
    dev = series.rolling(period).std()
    return {
        "upper": float((middle + std * dev).iloc[-1]),
        "middle": float(middle.iloc[-1]),
        "lower": float((middle - std * dev).iloc[-1]),
    }


def stochastic(df: pd.DataFrame, period: int = 14, smooth: int = 3) -> dict[str, float]:
    """Slow %K (smoothed) and its %D signal."""
    lowest = df["low"].rolling(period).min()
    highest = df["high"].rolling(period).max()
    span = (highest - lowest).replace(0, np.nan)
    raw_k = 100 * (df["close"] - lowest) / span
    k = raw_k.rolling(smooth).mean()
    d = k.rolling(smooth).mean()
    return {"k": float(k.iloc[-1]), "d": float(d.iloc[-1])}


def _true_range(df: pd.DataFrame) -> pd.Series:
    high = df["high"]
    low = df["low"]
    close = df["close"]
    return pd.concat([
        high - low,
        (high - close.shift()).abs(),
        (low - close.shift()).abs(),
    ], axis=1).max(axis=1)


def atr(df: pd.DataFrame, period: int = 14) -> float:
    """Average True Range."""
    return float(_true_range(df).rolling(period).mean().iloc[-1])


def adx(df: pd.DataFrame, period: int = 14) -> float:
    """Average Directional Index, Wilder smoothing."""
    up = df["high"].diff()
    down = -df["low"].diff()
    plus_dm = pd.Series(np.where((up > down) & (up > 0), up, 0.0), index=df.index)
    minus_dm = pd.Series(np.where((down > up) & (down > 0), down, 0.0), index=df.index)

    alpha = 1 / period
    tr = _true_range(df).ewm(alpha=alpha, adjust=False).mean()
    plus_di = 100 * plus_dm.ewm(alpha=alpha, adjust=False).mean() / tr
    minus_di = 100 * minus_dm.ewm(alpha=alpha, adjust=False).mean() / tr
    dx = 100 * (plus_di - minus_di).abs() / (plus_di + minus_di).replace(0, np.nan)
    return float(dx.ewm(alpha=alpha, adjust=False).mean().iloc[-1])


def vwap(df: pd.DataFrame) -> float:
    typical = (df["high"] + df["low"] + df["close"]) / 3
    volume = df["volume"].sum()
    return float((typical * df["volume"]).sum() / volume) if volume > 0 else float(df["close"].iloc[-1])


def obv(df: pd.DataFrame) -> float:
    direction = np.sign(df["close"].diff().fillna(0))
    return float((direction * df["volume"]).cumsum().iloc[-1])


def _compute_rsi(df, period=14):
    return rsi(df["close"], period)


def _compute_ema(df, period=20):
    return float(ema(df["close"], period).iloc[-1])


def _compute_sma(df, period=20):
    return float(sma(df["close"], period).iloc[-1])


def _compute_macd(df, fast=12, slow=26, signal=9):
    return macd(df["close"], fast, slow, signal)


def _compute_bollinger(df, period=20, std=2.0):
    return bollinger(df["close"], period, std)


def _compute_price(df):
    return float(df["close"].iloc[-1])


INDICATORS: dict[str, Callable[..., IndicatorValue]] = {
    "rsi": _compute_rsi,
    "ema": _compute_ema,
    "sma": _compute_sma,
    "macd": _compute_macd,
    "stoch": stochastic,
    "bollinger": _compute_bollinger,
    "atr": atr,
    "adx": adx,
    "vwap": vwap,
    "obv": obv,
    "price": _compute_price,
}

ALIASES = {"stochastic": "stoch", "bb": "bollinger", "bbands": "bollinger", "close": "price"}


def canonical(indicator: str) -> str:
    name = indicator.strip().lower()
    return ALIASES.get(name, name)


def compute(df: pd.DataFrame, indicator: str, params: dict | None = None) -> IndicatorValue:
    """Compute one indicator by name. Raises KeyError for unknown names."""
    fn = INDICATORS[canonical(indicator)]
    return fn(df, **(params or {}))
