"""
Tests for simulated settlement, reward shaping and the settlement scheduler.
"""
import random
import threading

import pytest

from features.market_state import MarketState, Trend
from trading.simulation import (
    TradeScheduler,
    calculate_action_risk,
    calculate_reward,
    simulate_price_movement,
    simulate_trade_success,
)
from trading.trade_model import ActionType, TradeAction


class FixedRandom:
    """rng stub returning the same draw every time."""

    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


def _state(price=1000.0, trend=Trend.FLAT, rsi=50.0, volatility=0.0, spread=0.0, ts=0):
    return MarketState(
        item_id=1,
        price=price,
        volume=100.0,
        spread_percent=spread,
        volatility=volatility,
        rsi=rsi,
        macd=0.0,
        trend=trend,
        timestamp=ts,
    )


def _action(kind=ActionType.BUY, quantity=1):
    return TradeAction(type=kind, item_id=1, quantity=quantity, price=1000.0)


class TestTradeSuccess:
    """Tests for the success heuristic."""

    def test_hold_probability(self):
        """HOLD succeeds with probability 0.8."""
        hold = _action(ActionType.HOLD)
        assert simulate_trade_success(_state(), hold, FixedRandom(0.79)) is True
        assert simulate_trade_success(_state(), hold, FixedRandom(0.81)) is False

    def test_probability_capped(self):
        """Stacked bonuses are capped at 0.95."""
        state = _state(trend=Trend.UP, rsi=20, spread=10)
        assert simulate_trade_success(state, _action(), FixedRandom(0.949)) is True
        assert simulate_trade_success(state, _action(), FixedRandom(0.951)) is False

    def test_sell_with_downtrend(self):
        """SELL in a downtrend gets the trend bonus."""
        state = _state(trend=Trend.DOWN)
        assert simulate_trade_success(state, _action(ActionType.SELL), FixedRandom(0.79)) is True
        assert simulate_trade_success(_state(), _action(ActionType.SELL), FixedRandom(0.61)) is False

    def test_seeded_rng_is_reproducible(self):
        """The same seed gives the same sequence of outcomes."""
        state = _state(volatility=5)
        a = [simulate_trade_success(state, _action(), random.Random(7)) for _ in range(3)]
        b = [simulate_trade_success(state, _action(), random.Random(7)) for _ in range(3)]
        assert a == b


class TestPriceMovement:
    """Tests for settlement prices."""

    def test_trend_and_impact_bias(self):
        """Without noise, an uptrend BUY moves price up 1.5%."""
        assert simulate_price_movement(_state(trend=Trend.UP), _action(), FixedRandom(0.5)) == 1015

    def test_price_floor(self):
        """The settlement price is never below 1."""
        state = _state(price=0.4, trend=Trend.DOWN)
        assert simulate_price_movement(state, _action(ActionType.SELL), FixedRandom(0.0)) == 1

    def test_noise_scales_with_volatility(self):
        """Noise is bounded by half the volatility percentage."""
        rng = random.Random(3)
        state = _state(volatility=10)
        for _ in range(50):
            price = simulate_price_movement(state, _action(ActionType.HOLD), rng)
            assert 950 <= price <= 1050


class TestReward:
    """Tests for reward shaping."""

    def test_action_risk(self):
        """Volatility, spread, size and trend terms add up."""
        state = _state(trend=Trend.DOWN, volatility=1, spread=1)
        assert calculate_action_risk(state, _action(quantity=50)) == pytest.approx(0.9)

    def test_executed_profitable_buy(self):
        """Profit, time, risk and spread components."""
        previous = _state(spread=10, ts=0)
        current = _state(ts=120_000)
        reward = calculate_reward(previous, _action(), current, True, 5000)

        assert reward.profit_reward == pytest.approx(5.0)
        assert reward.time_reward == pytest.approx(8.0)
        assert reward.risk_penalty == pytest.approx(-5.0)
        assert reward.spread_reward == pytest.approx(1.0)
        assert reward.total == pytest.approx(9.0)
        assert reward.to_dict()["total_reward"] == pytest.approx(9.0)

    def test_slow_settlement_earns_no_time_reward(self):
        """Time reward bottoms out at zero."""
        reward = calculate_reward(_state(ts=0), _action(), _state(ts=20 * 60_000), True, 0)
        assert reward.time_reward == 0.0

    def test_unexecuted_actions(self):
        """HOLD is rewarded only in volatile markets; anything else costs 2."""
        hold = _action(ActionType.HOLD)
        assert calculate_reward(_state(volatility=6), hold, _state(), False).total == 1.0
        assert calculate_reward(_state(volatility=1), hold, _state(), False).total == -0.5
        assert calculate_reward(_state(), _action(), _state(), False).total == -2.0


class TestTradeScheduler:
    """Tests for delayed settlement."""

    def test_runs_callback(self):
        """A scheduled callback runs with its arguments."""
        scheduler = TradeScheduler()
        seen = []
        done = threading.Event()

        def settle(trade_id):
            seen.append(trade_id)
            done.set()

        scheduler.schedule("s1", 0.0, settle, "t1")

        assert done.wait(timeout=5)
        assert seen == ["t1"]
        assert scheduler.pending_count() == 0

    def test_cancel(self):
        """A cancelled callback never runs."""
        scheduler = TradeScheduler()
        called = threading.Event()
        handle = scheduler.schedule("s1", 60.0, called.set)

        assert scheduler.pending_count("s1") == 1
        assert scheduler.cancel(handle) is True
        assert scheduler.cancel(handle) is False
        assert scheduler.pending_count() == 0
        assert not called.is_set()

    def test_cancel_session(self):
        """Cancelling a session leaves other sessions alone."""
        scheduler = TradeScheduler()
        scheduler.schedule("s1", 60.0, lambda: None)
        scheduler.schedule("s1", 60.0, lambda: None)
        scheduler.schedule("s2", 60.0, lambda: None)

        assert scheduler.cancel_session("s1") == 2
        assert scheduler.pending_count("s2") == 1
        assert scheduler.shutdown() == 1

    def test_failing_callback_is_contained(self):
        """An exception inside a callback does not escape the timer."""
        scheduler = TradeScheduler()
        done = threading.Event()

        def boom():
            done.set()
            raise RuntimeError("settlement failed")

        scheduler.schedule("s1", 0.0, boom)
        assert done.wait(timeout=5)
        scheduler.wait_all(timeout=5)
        assert scheduler.pending_count() == 0
