"""Trade outcome tracking.

Tracks simulated trades from start to settlement, keeps an append-only ledger
of outcomes with running profit/drawdown aggregates, and derives performance
snapshots and market-condition analytics on demand.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from core.exceptions import DuplicateTradeError, TradeNotFoundError
from features.market_state import MarketState, Trend
from trading.performance import PerformanceSnapshot, calculate_performance
from trading.trade_model import ActionType, TradeAction


logger = logging.getLogger(__name__)

FAILED_TRADE_PROFIT = -50.0
HOLD_TRADE_PROFIT = 10.0
CANCELLATION_FEE = 25.0
TRADING_FEE_RATE = 0.01

_DAY_MS = 24 * 60 * 60 * 1000


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ActiveTrade:
    trade_id: str
    action: TradeAction
    market_state: MarketState
    start_time: int
    initial_price: float
    initial_risk: float
    decision_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "trade_id": self.trade_id,
            "decision_id": self.decision_id,
            "action": self.action.to_dict(),
            "market_state": self.market_state.to_dict(),
            "start_time": self.start_time,
            "initial_price": self.initial_price,
            "initial_risk": self.initial_risk,
            "status": "ACTIVE",
        }


@dataclass(frozen=True)
class TradeOutcome:
    trade_id: str
    action: TradeAction
    initial_market_state: MarketState
    final_market_state: MarketState
    initial_price: float
    final_price: float
    success: bool
    profit: float
    start_time: int
    duration_ms: int
    risk_reward_ratio: float
    initial_risk: float
    timestamp: int
    decision_id: Optional[str] = None
    status: str = "COMPLETED"

    @property
    def price_change(self) -> float:
        return self.final_price - self.initial_price

    @property
    def price_change_percent(self) -> float:
        if not self.initial_price:
            return 0.0
        return self.price_change / self.initial_price * 100.0

    @property
    def efficiency(self) -> float:
        """Profit per second of holding time."""
        return self.profit / (self.duration_ms / 1000.0) if self.duration_ms > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "trade_id": self.trade_id,
            "decision_id": self.decision_id,
            "action": self.action.to_dict(),
            "initial_market_state": self.initial_market_state.to_dict(),
            "final_market_state": self.final_market_state.to_dict(),
            "initial_price": self.initial_price,
            "final_price": self.final_price,
            "price_change": self.price_change,
            "price_change_percent": self.price_change_percent,
            "success": self.success,
            "profit": self.profit,
            "start_time": self.start_time,
            "duration_ms": self.duration_ms,
            "risk_reward_ratio": self.risk_reward_ratio,
            "initial_risk": self.initial_risk,
            "efficiency": self.efficiency,
            "timestamp": self.timestamp,
            "status": self.status,
        }


@dataclass
class RunningTotals:
    total_trades: int = 0
    successful_trades: int = 0
    total_profit: float = 0.0
    total_loss: float = 0.0
    peak_profit: float = 0.0
    current_drawdown: float = 0.0
    max_drawdown: float = 0.0

    def record(self, outcome: TradeOutcome) -> None:
        self.total_trades += 1
        if outcome.success:
            self.successful_trades += 1
        if outcome.profit > 0:
            self.total_profit += outcome.profit
            self.peak_profit = max(self.peak_profit, self.total_profit)
            self.current_drawdown = 0.0
        else:
            loss = abs(outcome.profit)
            self.total_loss += loss
            self.current_drawdown += loss
            self.max_drawdown = max(self.max_drawdown, self.current_drawdown)

    def to_dict(self) -> dict:
        return {
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "total_profit": self.total_profit,
            "total_loss": self.total_loss,
            "peak_profit": self.peak_profit,
            "current_drawdown": self.current_drawdown,
            "max_drawdown": self.max_drawdown,
        }


def calculate_initial_risk(action: TradeAction, state: MarketState) -> float:
    """Risk score in [0, 1] assessed when a trade is opened."""
    risk = 0.1 if action.type == ActionType.HOLD else 0.3
    risk += state.volatility / 100 * 0.3
    risk += state.spread_percent / 100 * 0.2

    if state.trend == Trend.DOWN and action.type == ActionType.BUY:
        risk += 0.2
    if state.trend == Trend.UP and action.type == ActionType.SELL:
        risk += 0.2

    if state.rsi > 70 and action.type == ActionType.BUY:
        risk += 0.1
    if state.rsi < 30 and action.type == ActionType.SELL:
        risk += 0.1

    return min(1.0, max(0.0, risk))


def calculate_trade_profit(
    action: TradeAction, initial_price: float, final_price: float, success: bool
) -> float:
    """Signed profit of a settled trade after the flat trading fee."""
    if not success:
        return FAILED_TRADE_PROFIT

    if action.type == ActionType.BUY:
        profit = (final_price - initial_price) * action.quantity
    elif action.type == ActionType.SELL:
        profit = (initial_price - final_price) * action.quantity
    else:
        profit = HOLD_TRADE_PROFIT

    return profit - abs(profit) * TRADING_FEE_RATE


def _rsi_zone(rsi: float) -> str:
    if rsi < 30:
        return "oversold"
    if rsi > 70:
        return "overbought"
    return "neutral"


def _volatility_tier(volatility: float) -> str:
    if volatility < 2:
        return "low"
    if volatility > 5:
        return "high"
    return "medium"


def _spread_tier(spread: float) -> str:
    if spread < 5:
        return "tight"
    if spread > 15:
        return "wide"
    return "medium"


@dataclass
class _Bucket:
    total_trades: int = 0
    successful_trades: int = 0
    total_profit: float = 0.0

    def add(self, outcome: TradeOutcome) -> None:
        self.total_trades += 1
        if outcome.success:
            self.successful_trades += 1
        self.total_profit += outcome.profit

    def to_dict(self) -> dict:
        return {
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "success_rate": self.successful_trades / self.total_trades * 100.0,
            "average_profit": self.total_profit / self.total_trades,
            "total_profit": self.total_profit,
        }


class TradeOutcomeTracker:
    """In-memory trade lifecycle tracker.

    All state sits behind one lock; the ledger is append-only except for
    ``reset``.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or _utc_now_ms
        self._lock = threading.Lock()
        self._active: dict[str, ActiveTrade] = {}
        self._ledger: list[TradeOutcome] = []
        self._totals = RunningTotals()
        logger.info("Trade outcome tracker initialized")

    def start_trade(
        self,
        trade_id: str,
        action: TradeAction,
        market_state: MarketState,
        decision_id: Optional[str] = None,
    ) -> ActiveTrade:
        trade = ActiveTrade(
            trade_id=trade_id,
            action=action,
            market_state=market_state,
            start_time=self._clock(),
            initial_price=market_state.price,
            initial_risk=calculate_initial_risk(action, market_state),
            decision_id=decision_id,
        )
        with self._lock:
            if trade_id in self._active:
                raise DuplicateTradeError(f"Trade already active: {trade_id}")
            self._active[trade_id] = trade

        logger.debug(
            f"Trade started: {trade_id} {action.type.value} item={action.item_id} "
            f"price={market_state.price} risk={trade.initial_risk:.3f}"
        )
        return trade

    def complete_trade(
        self,
        trade_id: str,
        final_price: float,
        final_market_state: MarketState,
        success: bool,
    ) -> TradeOutcome:
        with self._lock:
            trade = self._active.pop(trade_id, None)
            if trade is None:
                raise TradeNotFoundError(f"No active trade: {trade_id}")

            now = self._clock()
            profit = calculate_trade_profit(trade.action, trade.initial_price, final_price, success)
            outcome = TradeOutcome(
                trade_id=trade.trade_id,
                decision_id=trade.decision_id,
                action=trade.action,
                initial_market_state=trade.market_state,
                final_market_state=final_market_state,
                initial_price=trade.initial_price,
                final_price=float(final_price),
                success=bool(success),
                profit=profit,
                start_time=trade.start_time,
                duration_ms=max(0, now - trade.start_time),
                risk_reward_ratio=1.0 if profit > 0 else 0.0,
                initial_risk=trade.initial_risk,
                timestamp=now,
            )
            self._ledger.append(outcome)
            self._totals.record(outcome)

        logger.info(
            f"Trade completed: {trade_id} success={success} profit={profit:.2f} "
            f"duration={outcome.duration_ms}ms final_price={final_price}"
        )
        return outcome

    def cancel_trade(self, trade_id: str) -> bool:
        """Cancel an active trade; it is recorded as a failed outcome with a flat fee."""
        with self._lock:
            trade = self._active.pop(trade_id, None)
            if trade is None:
                logger.warning(f"Attempted to cancel unknown trade: {trade_id}")
                return False

            now = self._clock()
            outcome = TradeOutcome(
                trade_id=trade.trade_id,
                decision_id=trade.decision_id,
                action=trade.action,
                initial_market_state=trade.market_state,
                final_market_state=trade.market_state,
                initial_price=trade.initial_price,
                final_price=trade.initial_price,
                success=False,
                profit=-CANCELLATION_FEE,
                start_time=trade.start_time,
                duration_ms=max(0, now - trade.start_time),
                risk_reward_ratio=0.0,
                initial_risk=trade.initial_risk,
                timestamp=now,
                status="CANCELLED",
            )
            self._ledger.append(outcome)
            self._totals.record(outcome)

        logger.info(f"Trade cancelled: {trade_id}")
        return True

    def calculate_performance_metrics(self, time_range_ms: Optional[int] = None) -> PerformanceSnapshot:
        with self._lock:
            outcomes = list(self._ledger)
            now = self._clock()
        if time_range_ms is not None:
            cutoff = now - time_range_ms
            outcomes = [t for t in outcomes if t.timestamp >= cutoff]
        return calculate_performance(outcomes)

    def get_trade_analytics_by_market_condition(self) -> dict[str, dict[str, dict]]:
        """Group outcomes by the market conditions they were opened in.

        Only non-empty buckets are reported.
        """
        groups: dict[str, dict[str, _Bucket]] = {
            "trend": {},
            "rsi": {},
            "volatility": {},
            "spread": {},
        }
        with self._lock:
            outcomes = list(self._ledger)

        for outcome in outcomes:
            state = outcome.initial_market_state
            keys = {
                "trend": state.trend.value,
                "rsi": _rsi_zone(state.rsi),
                "volatility": _volatility_tier(state.volatility),
                "spread": _spread_tier(state.spread_percent),
            }
            for dimension, key in keys.items():
                groups[dimension].setdefault(key, _Bucket()).add(outcome)

        return {
            dimension: {key: bucket.to_dict() for key, bucket in buckets.items()}
            for dimension, buckets in groups.items()
        }

    def get_trade(self, trade_id: str) -> Optional[dict]:
        with self._lock:
            active = self._active.get(trade_id)
            if active is not None:
                return active.to_dict()
            for outcome in self._ledger:
                if outcome.trade_id == trade_id:
                    return outcome.to_dict()
        return None

    def get_active_trades(self) -> list[ActiveTrade]:
        with self._lock:
            return list(self._active.values())

    def get_all_outcomes(self) -> list[TradeOutcome]:
        with self._lock:
            return list(self._ledger)

    def outcomes_count(self) -> int:
        with self._lock:
            return len(self._ledger)

    def get_running_totals(self) -> RunningTotals:
        with self._lock:
            return RunningTotals(**self._totals.to_dict())

    def get_stats(self) -> dict:
        with self._lock:
            active = len(self._active)
            completed = len(self._ledger)
            totals = self._totals.to_dict()
        return {
            "active_trades": active,
            "completed_trades": completed,
            "total_trades": active + completed,
            "current_performance": totals,
            "recent_performance": self.calculate_performance_metrics(_DAY_MS).to_dict(),
        }

    def reset(self) -> None:
        with self._lock:
            self._active.clear()
            self._ledger = []
            self._totals = RunningTotals()
        logger.info("Trade outcome tracker reset")

    def export_trade_data(self) -> dict:
        with self._lock:
            return {
                "active_trades": [t.to_dict() for t in self._active.values()],
                "completed_trades": [t.to_dict() for t in self._ledger],
                "performance_metrics": self._totals.to_dict(),
                "export_timestamp": self._clock(),
            }
