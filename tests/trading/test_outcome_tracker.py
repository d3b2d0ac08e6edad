"""
Tests for trade outcome tracking and performance statistics.
"""
import math

import pytest

from core.exceptions import DuplicateTradeError, TradeNotFoundError
from features.market_state import MarketState, Trend
from trading.outcome_tracker import (
    CANCELLATION_FEE,
    FAILED_TRADE_PROFIT,
    TradeOutcomeTracker,
    calculate_initial_risk,
    calculate_trade_profit,
)
from trading.performance import (
    calculate_performance,
    compute_max_drawdown,
    compute_profit_factor,
    compute_sharpe_like,
)
from trading.trade_model import ActionType, TradeAction


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


def _state(price=100.0, trend=Trend.FLAT, rsi=50.0, volatility=0.0, spread=0.0, ts=0):
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


def _action(kind=ActionType.BUY, quantity=1, price=100.0):
    return TradeAction(type=kind, item_id=1, quantity=quantity, price=price)


class TestPerformanceMath:
    """Tests for the pure performance helpers."""

    def test_max_drawdown(self):
        """Peak 250 down to -50 is a 300 drawdown."""
        assert compute_max_drawdown([100, -50, 200, -300, 50]) == 300.0

    def test_max_drawdown_from_start(self):
        """Opening losses are measured from zero."""
        assert compute_max_drawdown([-40, -10, 20]) == 50.0
        assert compute_max_drawdown([]) == 0.0

    def test_profit_factor(self):
        """Gross profit over gross loss, with no-loss edge cases."""
        assert compute_profit_factor(300, 100) == 3.0
        assert math.isinf(compute_profit_factor(300, 0))
        assert compute_profit_factor(0, 0) == 0.0

    def test_sharpe_like(self):
        """Mean over population standard deviation."""
        assert compute_sharpe_like([1, 3]) == pytest.approx(2.0)
        assert compute_sharpe_like([5, 5, 5]) == 0.0
        assert compute_sharpe_like([]) == 0.0


class TestProfitAndRisk:
    """Tests for per-trade profit and initial risk."""

    def test_buy_profit_after_fee(self):
        """BUY profits on a rise, minus the 1% fee."""
        assert calculate_trade_profit(_action(quantity=2), 100, 110, True) == pytest.approx(19.8)

    def test_buy_loss_after_fee(self):
        """The fee is charged on the absolute amount."""
        assert calculate_trade_profit(_action(), 110, 100, True) == pytest.approx(-10.1)

    def test_sell_profit(self):
        """SELL profits on a fall."""
        assert calculate_trade_profit(_action(ActionType.SELL), 100, 90, True) == pytest.approx(9.9)

    def test_hold_profit(self):
        """A successful HOLD earns the flat amount."""
        assert calculate_trade_profit(_action(ActionType.HOLD), 100, 50, True) == pytest.approx(9.9)

    def test_failed_trade(self):
        """Any failed trade costs the flat failure amount."""
        assert calculate_trade_profit(_action(), 100, 200, False) == FAILED_TRADE_PROFIT

    def test_risk_of_buy_against_trend(self):
        """Base, volatility, spread, trend and RSI terms add up."""
        state = _state(trend=Trend.DOWN, rsi=75, volatility=10, spread=10)
        assert calculate_initial_risk(_action(), state) == pytest.approx(0.65)

    def test_risk_of_quiet_hold(self):
        """A HOLD in a quiet market carries only the base risk."""
        assert calculate_initial_risk(_action(ActionType.HOLD), _state()) == pytest.approx(0.1)

    def test_risk_is_clamped(self):
        """Risk never exceeds 1."""
        state = _state(trend=Trend.DOWN, rsi=90, volatility=300, spread=300)
        assert calculate_initial_risk(_action(), state) == 1.0


class TestTradeOutcomeTracker:
    """Tests for the trade lifecycle."""

    def test_start_and_complete(self):
        """A completed trade leaves the active set and enters the ledger."""
        clock = FakeClock()
        tracker = TradeOutcomeTracker(clock=clock)
        tracker.start_trade("t1", _action(quantity=2), _state(), decision_id="d1")
        assert len(tracker.get_active_trades()) == 1

        clock.now += 5_000
        outcome = tracker.complete_trade("t1", 110, _state(price=110), True)

        assert outcome.profit == pytest.approx(19.8)
        assert outcome.duration_ms == 5_000
        assert outcome.decision_id == "d1"
        assert outcome.price_change == 10
        assert outcome.price_change_percent == pytest.approx(10.0)
        assert outcome.risk_reward_ratio == 1.0
        assert tracker.get_active_trades() == []
        assert tracker.outcomes_count() == 1
        assert tracker.get_trade("t1")["status"] == "COMPLETED"

    def test_duplicate_trade_rejected(self):
        """An id cannot be started twice while active."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        tracker.start_trade("t1", _action(), _state())
        with pytest.raises(DuplicateTradeError):
            tracker.start_trade("t1", _action(), _state())

    def test_complete_unknown_trade(self):
        """Completing a trade that was never started fails."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        with pytest.raises(TradeNotFoundError):
            tracker.complete_trade("missing", 100, _state(), True)

    def test_complete_twice(self):
        """A settled trade cannot be settled again."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        tracker.start_trade("t1", _action(), _state())
        tracker.complete_trade("t1", 100, _state(), True)
        with pytest.raises(TradeNotFoundError):
            tracker.complete_trade("t1", 100, _state(), True)

    def test_cancel_records_fee(self):
        """Cancelling records a failed outcome with the cancellation fee."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        tracker.start_trade("t1", _action(), _state())

        assert tracker.cancel_trade("t1") is True
        outcome = tracker.get_all_outcomes()[0]
        assert outcome.status == "CANCELLED"
        assert outcome.success is False
        assert outcome.profit == -CANCELLATION_FEE
        assert tracker.cancel_trade("t1") is False

    def test_running_drawdown(self):
        """Consecutive losses accumulate; a profit resets the current drawdown."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        for i, (final, ok) in enumerate([(200, True), (0, False), (0, False), (101, True)]):
            tracker.start_trade(f"t{i}", _action(), _state())
            tracker.complete_trade(f"t{i}", final, _state(price=final or 1), ok)

        totals = tracker.get_running_totals()
        assert totals.total_trades == 4
        assert totals.successful_trades == 2
        assert totals.max_drawdown == pytest.approx(100.0)
        assert totals.current_drawdown == 0.0
        assert totals.total_loss == pytest.approx(100.0)

    def test_empty_performance(self):
        """No outcomes gives a zeroed snapshot."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        perf = tracker.calculate_performance_metrics()
        assert perf.total_trades == 0
        assert perf.success_rate == 0.0
        assert perf.best_trade is None

    def test_performance_snapshot(self):
        """Snapshot aggregates the ledger."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        tracker.start_trade("a", _action(), _state())
        tracker.complete_trade("a", 200, _state(price=200), True)
        tracker.start_trade("b", _action(ActionType.SELL), _state())
        tracker.complete_trade("b", 100, _state(), False)

        perf = tracker.calculate_performance_metrics()
        assert perf.total_trades == 2
        assert perf.successful_trades == 1
        assert perf.success_rate == pytest.approx(50.0)
        assert perf.total_profit == pytest.approx(99.0)
        assert perf.total_loss == pytest.approx(50.0)
        assert perf.net_profit == pytest.approx(49.0)
        assert perf.best_trade.trade_id == "a"
        assert perf.worst_trade.trade_id == "b"
        assert set(perf.by_action) == {"BUY", "SELL"}
        assert perf.by_action["SELL"].success_rate == 0.0

    def test_time_range_filter(self):
        """Only outcomes inside the window are counted."""
        clock = FakeClock()
        tracker = TradeOutcomeTracker(clock=clock)
        tracker.start_trade("old", _action(), _state())
        tracker.complete_trade("old", 100, _state(), True)
        clock.now += 10_000
        tracker.start_trade("new", _action(), _state())
        tracker.complete_trade("new", 100, _state(), True)

        assert tracker.calculate_performance_metrics(time_range_ms=5_000).total_trades == 1
        assert calculate_performance(tracker.get_all_outcomes()).total_trades == 2

    def test_analytics_by_market_condition(self):
        """Outcomes are grouped by opening conditions; empty buckets are omitted."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        tracker.start_trade("a", _action(), _state(trend=Trend.UP, rsi=20, volatility=6, spread=20))
        tracker.complete_trade("a", 110, _state(price=110), True)
        tracker.start_trade("b", _action(), _state(trend=Trend.UP, rsi=50, volatility=1, spread=1))
        tracker.complete_trade("b", 100, _state(), False)

        analytics = tracker.get_trade_analytics_by_market_condition()
        assert analytics["trend"]["UP"]["total_trades"] == 2
        assert analytics["trend"]["UP"]["success_rate"] == pytest.approx(50.0)
        assert "DOWN" not in analytics["trend"]
        assert analytics["rsi"]["oversold"]["total_trades"] == 1
        assert analytics["rsi"]["neutral"]["total_trades"] == 1
        assert analytics["volatility"]["high"]["successful_trades"] == 1
        assert analytics["spread"]["tight"]["average_profit"] == FAILED_TRADE_PROFIT
        assert analytics["spread"]["wide"]["total_profit"] == pytest.approx(9.9)

    def test_stats_and_reset(self):
        """Stats count active and completed trades; reset clears everything."""
        tracker = TradeOutcomeTracker(clock=FakeClock())
        tracker.start_trade("a", _action(), _state())
        tracker.start_trade("b", _action(), _state())
        tracker.complete_trade("a", 100, _state(), True)

        stats = tracker.get_stats()
        assert stats["active_trades"] == 1
        assert stats["completed_trades"] == 1
        assert stats["total_trades"] == 2
        assert len(tracker.export_trade_data()["completed_trades"]) == 1

        tracker.reset()
        assert tracker.get_stats()["total_trades"] == 0
