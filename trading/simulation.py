"""
Simulated trade settlement.

Stand-in for real market feedback: a probability heuristic decides whether a
trade succeeds, a trend-biased random walk decides the settlement price, and a
reward is shaped from the outcome. Settlement itself is a delayed task run by
``TradeScheduler`` so the decision loop never waits on it.

The heuristics are kept exactly as tuned; they are not a validated trading
model.
"""

from __future__ import annotations

import itertools
import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from features.market_state import MarketState, Trend
from trading.trade_model import ActionType, TradeAction


logger = logging.getLogger(__name__)

BASE_SUCCESS_PROBABILITY = 0.6
HOLD_SUCCESS_PROBABILITY = 0.8
MAX_SUCCESS_PROBABILITY = 0.95


def simulate_trade_success(state: MarketState, action: TradeAction, rng: random.Random) -> bool:
    probability = BASE_SUCCESS_PROBABILITY

    if action.type == ActionType.BUY and state.trend == Trend.UP:
        probability += 0.2
    if action.type == ActionType.SELL and state.trend == Trend.DOWN:
        probability += 0.2
    if action.type == ActionType.HOLD:
        probability = HOLD_SUCCESS_PROBABILITY

    if state.rsi < 30 and action.type == ActionType.BUY:
        probability += 0.15
    if state.rsi > 70 and action.type == ActionType.SELL:
        probability += 0.15

    if state.spread_percent > 5:
        probability += 0.1

    return rng.random() < min(MAX_SUCCESS_PROBABILITY, probability)


def simulate_price_movement(state: MarketState, action: TradeAction, rng: random.Random) -> int:
    """Settlement price: volatility-scaled noise plus trend and market-impact bias, at least 1."""
    base = state.price
    movement = (rng.random() - 0.5) * (state.volatility / 100) * base

    if state.trend == Trend.UP:
        movement += base * 0.01
    elif state.trend == Trend.DOWN:
        movement -= base * 0.01

    if action.type == ActionType.BUY:
        movement += base * 0.005
    elif action.type == ActionType.SELL:
        movement -= base * 0.005

    return max(1, int(round(base + movement)))


def calculate_action_risk(state: MarketState, action: TradeAction) -> float:
    """Risk of an action from volatility, spread, size and trend; clamped to [0, 1]."""
    risk = state.volatility * 0.3 + state.spread_percent * 0.2 + action.quantity / 100 * 0.2
    if state.trend == Trend.DOWN and action.type == ActionType.BUY:
        risk += 0.3
    if state.trend == Trend.UP and action.type == ActionType.SELL:
        risk += 0.3
    return min(1.0, max(0.0, risk))


@dataclass(frozen=True)
class Reward:
    profit_reward: float = 0.0
    time_reward: float = 0.0
    risk_penalty: float = 0.0
    spread_reward: float = 0.0

    @property
    def total(self) -> float:
        return self.profit_reward + self.time_reward + self.risk_penalty + self.spread_reward

    def to_dict(self) -> dict:
        return {
            "profit_reward": self.profit_reward,
            "time_reward": self.time_reward,
            "risk_penalty": self.risk_penalty,
            "spread_reward": self.spread_reward,
            "total_reward": self.total,
        }


def calculate_reward(
    previous: MarketState,
    action: TradeAction,
    current: MarketState,
    executed: bool,
    profit: Optional[float] = None,
) -> Reward:
    """
    Shape a learning reward for a settled trade.

    Executed trades earn profit/1000, a bonus for settling within ten minutes,
    a risk penalty and (for profitable buys) a spread-capture bonus. A failed
    HOLD is rewarded only in volatile markets; any other failed action costs 2.
    """
    if executed and profit is not None:
        minutes = (current.timestamp - previous.timestamp) / 60_000
        spread_reward = 0.0
        if action.type == ActionType.BUY and profit > 0:
            spread_reward = min(5.0, previous.spread_percent * 0.1)
        return Reward(
            profit_reward=profit / 1000,
            time_reward=max(0.0, 10 - minutes),
            risk_penalty=-calculate_action_risk(previous, action) * 5,
            spread_reward=spread_reward,
        )

    if action.type == ActionType.HOLD:
        return Reward(time_reward=1.0 if previous.volatility > 5 else -0.5)
    return Reward(profit_reward=-2.0)


class TradeScheduler:
    """Runs settlement callbacks after a delay, one ``threading.Timer`` per trade.

    Handles are grouped by session so everything still pending for a session
    can be cancelled when it ends.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._timers: dict[int, tuple[str, threading.Timer]] = {}
        self._ids = itertools.count(1)
        # every timer not yet finished, including those whose callback is running
        self._threads: list[threading.Timer] = []

    def schedule(self, session_id: str, delay_s: float, fn: Callable[..., Any], *args: Any) -> int:
        handle = next(self._ids)

        def _run() -> None:
            with self._lock:
                if self._timers.pop(handle, None) is None:
                    return
            try:
                fn(*args)
            except Exception as e:
                logger.error(f"Scheduled settlement {handle} failed: {e}", exc_info=True)

        timer = threading.Timer(max(0.0, delay_s), _run)
        timer.daemon = True
        with self._lock:
            self._timers[handle] = (session_id, timer)
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(timer)
            timer.start()
        logger.debug(f"Scheduled settlement {handle} for session {session_id} in {delay_s:.1f}s")
        return handle

    def cancel(self, handle: int) -> bool:
        with self._lock:
            entry = self._timers.pop(handle, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def cancel_session(self, session_id: str) -> int:
        with self._lock:
            handles = [h for h, (sid, _) in self._timers.items() if sid == session_id]
            timers = [self._timers.pop(h)[1] for h in handles]
        for timer in timers:
            timer.cancel()
        if timers:
            logger.info(f"Cancelled {len(timers)} pending settlements for session {session_id}")
        return len(timers)

    def pending_count(self, session_id: Optional[str] = None) -> int:
        with self._lock:
            if session_id is None:
                return len(self._timers)
            return sum(1 for sid, _ in self._timers.values() if sid == session_id)

    def wait_all(self, timeout: Optional[float] = None) -> None:
        """Block until every timer scheduled so far has finished or been cancelled."""
        with self._lock:
            timers = list(self._threads)
        for timer in timers:
            timer.join(timeout)

    def shutdown(self) -> int:
        with self._lock:
            timers = [t for _, t in self._timers.values()]
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        return len(timers)
