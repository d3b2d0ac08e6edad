"""Market state encoding.

Turns a raw feed item (high/low price, volume, price history) into an immutable
``MarketState`` snapshot with technical indicators, and a ``MarketState`` into
the fixed-length normalized feature vector consumed by prediction backends.

Pure functions: no I/O, deterministic for identical input.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping

import numpy as np

from core.exceptions import InsufficientHistoryError
from features.technical import macd_line, rsi, spread_percent


MIN_HISTORY_POINTS = 3
FEATURE_VECTOR_SIZE = 8

_DAY_MS = 24 * 60 * 60 * 1000


class Trend(Enum):
    UP = "UP"
    DOWN = "DOWN"
    FLAT = "FLAT"


@dataclass(frozen=True)
class MarketState:
    item_id: Any
    price: float
    volume: float
    spread_percent: float
    volatility: float
    rsi: float
    macd: float
    trend: Trend
    timestamp: int

    def with_price(self, price: float, timestamp: int) -> MarketState:
        return replace(self, price=float(price), timestamp=int(timestamp))

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "price": self.price,
            "volume": self.volume,
            "spread_percent": self.spread_percent,
            "volatility": self.volatility,
            "rsi": self.rsi,
            "macd": self.macd,
            "trend": self.trend.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MarketState:
        return cls(
            item_id=data["item_id"],
            price=float(data["price"]),
            volume=float(data.get("volume", 0.0)),
            spread_percent=float(data.get("spread_percent", 0.0)),
            volatility=float(data.get("volatility", 0.0)),
            rsi=float(data.get("rsi", 50.0)),
            macd=float(data.get("macd", 0.0)),
            trend=Trend(data.get("trend", Trend.FLAT.value)),
            timestamp=int(data.get("timestamp", 0)),
        )


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


def _history_prices(raw_history: Any) -> list[float]:
    prices: list[float] = []
    for point in raw_history or []:
        if isinstance(point, Mapping):
            value = point.get("price") or point.get("high") or 0
        else:
            value = point
        try:
            p = float(value)
        except (TypeError, ValueError):
            continue
        if p > 0:
            prices.append(p)
    return prices


def trend_from_macd(macd: float) -> Trend:
    if macd > 0:
        return Trend.UP
    if macd < 0:
        return Trend.DOWN
    return Trend.FLAT


def encode_market_state(
    item: Mapping[str, Any],
    *,
    fast_period: int = 12,
    slow_period: int = 26,
    rsi_period: int = 14,
    now_ms: int | None = None,
) -> MarketState:
    """Encode a feed item into a ``MarketState``.

    Args:
        item: ``{id, priceData: {high, low}, priceHistory: [...], volume}``;
            snake_case keys are accepted as well
        fast_period: fast EMA span for the MACD line
        slow_period: slow EMA span for the MACD line
        rsi_period: trailing window of price changes for RSI
        now_ms: snapshot timestamp (epoch ms), defaults to the current time

    Raises:
        InsufficientHistoryError: fewer than 3 usable history points
    """
    item_id = item.get("id", item.get("itemId", item.get("item_id")))

    price_data = item.get("priceData") or item.get("price_data") or {}
    high = float(price_data.get("high") or 0)
    low = float(price_data.get("low") or 0)

    history = _history_prices(item.get("priceHistory", item.get("price_history")))
    if len(history) < MIN_HISTORY_POINTS:
        raise InsufficientHistoryError(
            f"Insufficient price history for item {item_id}: "
            f"need at least {MIN_HISTORY_POINTS} data points, got {len(history)}"
        )

    rsi_value = rsi(history, period=rsi_period)
    macd_value = macd_line(history, fast_period=fast_period, slow_period=slow_period)

    return MarketState(
        item_id=item_id,
        price=(high + low) / 2,
        volume=float(item.get("volume") or 0),
        spread_percent=spread_percent(high, low),
        volatility=abs(rsi_value - 50) / 5,
        rsi=rsi_value,
        macd=macd_value,
        trend=trend_from_macd(macd_value),
        timestamp=_utc_now_ms() if now_ms is None else int(now_ms),
    )


def encode_features(state: MarketState, *, now_ms: int | None = None) -> list[float]:
    """Fixed-length feature vector, each component clipped into [-1, 1]."""
    now = _utc_now_ms() if now_ms is None else int(now_ms)
    trend = {Trend.UP: 1.0, Trend.DOWN: -1.0, Trend.FLAT: 0.0}[state.trend]
    raw = np.array(
        [
            state.price / 10_000_000,
            state.volume / 1000,
            state.spread_percent / 100,
            state.volatility / 10,
            (state.rsi - 50) / 50,
            state.macd / 1000,
            trend,
            (now - state.timestamp) / _DAY_MS,
        ],
        dtype=np.float64,
    )
    return [float(v) for v in np.clip(raw, -1.0, 1.0)]
