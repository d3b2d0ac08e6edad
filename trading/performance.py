"""
Performance statistics over completed trades.

Calculates, from a chronologically ordered sequence of trade outcomes:
- Success rate and win rate
- Gross profit / gross loss and profit factor
- Sharpe-like ratio (mean profit / population stdev of profit)
- Maximum drawdown of cumulative profit
- Best / worst trade and per-action breakdown
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from trading.outcome_tracker import TradeOutcome


def compute_max_drawdown(profits: Sequence[float]) -> float:
    """
    Largest peak-to-trough decline of cumulative profit.

    The running peak starts at zero, so a sequence that opens with losses has a
    drawdown measured from the starting point.

    Example:
        >>> compute_max_drawdown([100, -50, 200, -300, 50])
        300.0
    """
    running = 0.0
    peak = 0.0
    max_dd = 0.0
    for p in profits:
        running += float(p)
        peak = max(peak, running)
        max_dd = max(max_dd, peak - running)
    return max_dd


def compute_profit_factor(total_profit: float, total_loss: float) -> float:
    """Gross profit / gross loss; +inf without losses when profitable, else 0."""
    if total_loss > 0:
        return total_profit / total_loss
    return math.inf if total_profit > 0 else 0.0


def compute_sharpe_like(profits: Sequence[float]) -> float:
    if len(profits) == 0:
        return 0.0
    arr = np.asarray(profits, dtype=np.float64)
    std = float(arr.std())
    if std == 0:
        return 0.0
    return float(arr.mean() / std)


@dataclass(frozen=True)
class ActionBreakdown:
    total_trades: int
    successful_trades: int
    success_rate: float
    total_profit: float

    def to_dict(self) -> dict:
        return {
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "success_rate": self.success_rate,
            "total_profit": self.total_profit,
        }


@dataclass(frozen=True)
class PerformanceSnapshot:
    total_trades: int = 0
    successful_trades: int = 0
    success_rate: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    net_profit: float = 0.0
    average_profit: float = 0.0
    average_loss: float = 0.0
    max_drawdown: float = 0.0
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0
    win_rate: float = 0.0
    average_duration_ms: float = 0.0
    best_trade: Optional["TradeOutcome"] = None
    worst_trade: Optional["TradeOutcome"] = None
    by_action: dict[str, ActionBreakdown] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "success_rate": self.success_rate,
            "total_profit": self.total_profit,
            "total_loss": self.total_loss,
            "net_profit": self.net_profit,
            "average_profit": self.average_profit,
            "average_loss": self.average_loss,
            "max_drawdown": self.max_drawdown,
            "profit_factor": self.profit_factor,
            "sharpe_ratio": self.sharpe_ratio,
            "win_rate": self.win_rate,
            "average_duration_ms": self.average_duration_ms,
            "best_trade": self.best_trade.to_dict() if self.best_trade else None,
            "worst_trade": self.worst_trade.to_dict() if self.worst_trade else None,
            "by_action": {k: v.to_dict() for k, v in self.by_action.items()},
        }


def calculate_performance(outcomes: Sequence["TradeOutcome"]) -> PerformanceSnapshot:
    """
    Compute a ``PerformanceSnapshot`` from chronologically ordered outcomes.

    An empty sequence yields a zeroed snapshot.
    """
    if not outcomes:
        return PerformanceSnapshot()

    total_trades = len(outcomes)
    successful_trades = sum(1 for t in outcomes if t.success)

    all_profits = [t.profit for t in outcomes]
    gains = [p for p in all_profits if p > 0]
    losses = [abs(p) for p in all_profits if p < 0]

    total_profit = float(sum(gains))
    total_loss = float(sum(losses))

    by_action: dict[str, ActionBreakdown] = {}
    for action_type in sorted({t.action.type.value for t in outcomes}):
        subset = [t for t in outcomes if t.action.type.value == action_type]
        ok = sum(1 for t in subset if t.success)
        by_action[action_type] = ActionBreakdown(
            total_trades=len(subset),
            successful_trades=ok,
            success_rate=ok / len(subset) * 100.0,
            total_profit=float(sum(t.profit for t in subset)),
        )

    return PerformanceSnapshot(
        total_trades=total_trades,
        successful_trades=successful_trades,
        success_rate=successful_trades / total_trades * 100.0,
        total_profit=total_profit,
        total_loss=total_loss,
        net_profit=total_profit - total_loss,
        average_profit=total_profit / len(gains) if gains else 0.0,
        average_loss=total_loss / len(losses) if losses else 0.0,
        max_drawdown=compute_max_drawdown(all_profits),
        profit_factor=compute_profit_factor(total_profit, total_loss),
        sharpe_ratio=compute_sharpe_like(all_profits),
        win_rate=len(gains) / total_trades * 100.0,
        average_duration_ms=float(np.mean([t.duration_ms for t in outcomes])),
        best_trade=max(outcomes, key=lambda t: t.profit),
        worst_trade=min(outcomes, key=lambda t: t.profit),
        by_action=by_action,
    )
