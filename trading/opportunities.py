"""
Trading opportunity finder.

Screens a snapshot of current GE prices for flips worth making under the live
adaptive configuration: items above ``max_item_value`` are skipped, as are
items whose after-tax margin falls below ``min_profit_margin``. The remainder
are ranked by profit potential per unit of risk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from trading.finance_utils import calculate_ge_tax, calculate_profit_after_tax


logger = logging.getLogger(__name__)

DEFAULT_OPPORTUNITY_LIMIT = 50
MIN_RISK_DIVISOR = 0.1


@dataclass(frozen=True)
class TradingOpportunity:
    item_id: Any
    item_name: Optional[str]
    buy_price: float
    sell_price: float
    spread: float
    spread_percentage: float
    ge_tax: int
    profit_after_tax: float
    profit_margin: float
    volume: float
    buy_limit: Optional[int]
    risk_score: float
    profit_potential: float

    @property
    def score(self) -> float:
        return self.profit_potential / max(self.risk_score, MIN_RISK_DIVISOR)

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "item_name": self.item_name,
            "buy_price": self.buy_price,
            "sell_price": self.sell_price,
            "spread": self.spread,
            "spread_percentage": self.spread_percentage,
            "ge_tax": self.ge_tax,
            "profit_after_tax": self.profit_after_tax,
            "profit_margin": self.profit_margin,
            "volume": self.volume,
            "buy_limit": self.buy_limit,
            "risk_score": self.risk_score,
            "profit_potential": self.profit_potential,
            "score": self.score,
        }


def calculate_risk_score(price_data: Mapping[str, Any]) -> float:
    """Coarse risk score: expensive and thinly traded items score higher."""
    high = float(price_data.get("high") or 0)
    volume = float(price_data.get("volume") or 0)
    risk = 0.0

    if high > 1_000_000:
        risk += 2
    elif high > 100_000:
        risk += 1

    if price_data.get("members"):
        risk += 1

    if volume < 100:
        risk += 2
    elif volume < 1000:
        risk += 1

    if price_data.get("stackable"):
        risk -= 0.5

    return max(0.0, risk)


def _risk_bucket(risk: float) -> str:
    if risk < 1:
        return "low"
    if risk < 3:
        return "medium"
    return "high"


def find_trading_opportunities(
    current_prices: Mapping[Any, Mapping[str, Any]],
    *,
    max_item_value: float,
    min_profit_margin: float,
    limit: int = DEFAULT_OPPORTUNITY_LIMIT,
) -> dict:
    """
    Rank flipping opportunities from ``{item_id: {high, low, volume?, ...}}``.

    Returns:
        dict: ``{"opportunities": [...], "summary": {...}}`` with at most
        ``limit`` opportunities, best first.
    """
    opportunities: list[TradingOpportunity] = []

    for item_id, price_data in current_prices.items():
        if not price_data:
            continue
        high = float(price_data.get("high") or 0)
        low = float(price_data.get("low") or 0)
        if high <= 0 or low <= 0:
            continue
        if high > max_item_value:
            continue

        profit = calculate_profit_after_tax(low, high)
        margin = profit / low
        if margin < min_profit_margin:
            continue

        buy_limit = price_data.get("buy_limit", price_data.get("buyLimit"))
        spread = high - low
        opportunities.append(
            TradingOpportunity(
                item_id=item_id,
                item_name=price_data.get("name"),
                buy_price=low,
                sell_price=high,
                spread=spread,
                spread_percentage=spread / low * 100,
                ge_tax=calculate_ge_tax(high),
                profit_after_tax=profit,
                profit_margin=margin,
                volume=float(price_data.get("volume") or 0),
                buy_limit=int(buy_limit) if buy_limit else None,
                risk_score=calculate_risk_score(price_data),
                profit_potential=profit * (int(buy_limit) if buy_limit else 1),
            )
        )

    opportunities.sort(key=lambda o: o.score, reverse=True)
    top = opportunities[:limit]

    risk_distribution = {"low": 0, "medium": 0, "high": 0}
    for o in top:
        risk_distribution[_risk_bucket(o.risk_score)] += 1

    avg_margin = (
        sum(o.profit_margin for o in opportunities) / len(opportunities) if opportunities else 0.0
    )
    logger.info(
        f"Trading opportunities: analyzed={len(current_prices)} viable={len(opportunities)} "
        f"selected={len(top)} avg_margin={avg_margin * 100:.2f}%"
    )

    return {
        "opportunities": [o.to_dict() for o in top],
        "summary": {
            "total_analyzed": len(current_prices),
            "viable_opportunities": len(opportunities),
            "avg_profit_margin": avg_margin,
            "risk_distribution": risk_distribution,
        },
    }
