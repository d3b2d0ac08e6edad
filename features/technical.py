from __future__ import annotations

from typing import Sequence

import pandas as pd


def _ema(series: pd.Series, span: int) -> pd.Series:
    return series.ewm(span=span, adjust=False).mean()


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Relative strength index over the trailing ``period`` price changes.

    Uses simple averages of gains and losses. When fewer than ``period`` changes
    are available the whole series is used. Returns 100 when the window holds no
    losses (a flat window included).
    """
    close = pd.Series(list(prices), dtype="float64")
    if len(close) < 2:
        raise ValueError("rsi needs at least two prices")

    delta = close.diff().dropna().tail(period)
    gain = delta.clip(lower=0)
    loss = (-delta).clip(lower=0)

    avg_gain = float(gain.mean())
    avg_loss = float(loss.mean())

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def macd_line(prices: Sequence[float], fast_period: int = 12, slow_period: int = 26) -> float:
    """Latest EMA(fast) - EMA(slow) of the price series."""
    if fast_period <= 0 or slow_period <= 0:
        raise ValueError("EMA periods must be positive")

    close = pd.Series(list(prices), dtype="float64")
    if close.empty:
        raise ValueError("macd needs at least one price")

    fast = _ema(close, span=fast_period)
    slow = _ema(close, span=slow_period)
    return float(fast.iloc[-1] - slow.iloc[-1])


def spread_percent(high: float, low: float) -> float:
    if not low:
        return 0.0
    return (float(high) - float(low)) / float(low) * 100.0
