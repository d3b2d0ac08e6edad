"""
Tests for the trading orchestrator decision loop.
"""
import random

import pytest

from adaptive.adaptive_controller import AdaptiveConfig, AdaptiveLearningController
from core.config import load_config
from models.backends import HeuristicBackend
from models.gateway import PredictionGateway
from storage.decision_store import InMemoryDecisionStore
from storage.learning_store import InMemoryLearningSessionStore
from trading.orchestrator import TradingOrchestrator
from trading.outcome_tracker import CANCELLATION_FEE
from trading.trading_session import SessionStatus


class FakeClock:
    def __init__(self, now=50_000_000):
        self.now = now

    def __call__(self):
        return self.now


class ManualScheduler:
    """Settlement scheduler that runs callbacks only when asked to."""

    def __init__(self):
        self._pending = {}
        self._next = 0

    def schedule(self, session_id, delay_s, fn, *args):
        self._next += 1
        self._pending[self._next] = (session_id, fn, args)
        return self._next

    def cancel(self, handle):
        return self._pending.pop(handle, None) is not None

    def pending_count(self, session_id=None):
        return sum(1 for sid, _, _ in self._pending.values() if session_id in (None, sid))

    def wait_all(self, timeout=None):
        while self._pending:
            handle = min(self._pending)
            _, fn, args = self._pending.pop(handle)
            fn(*args)

    def shutdown(self):
        n = len(self._pending)
        self._pending.clear()
        return n


def _falling_item(item_id):
    # oversold downtrend with a 10% spread: the greedy policy buys
    return {
        "id": item_id,
        "priceData": {"high": 1100, "low": 1000},
        "priceHistory": [1200, 1180, 1150, 1120, 1100],
        "volume": 500,
    }


def _rising_item(item_id):
    return {
        "id": item_id,
        "priceData": {"high": 1100, "low": 1000},
        "priceHistory": [1000, 1020, 1050, 1080, 1100],
        "volume": 500,
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return HeuristicBackend(epsilon=0.0, rng=random.Random(1))


@pytest.fixture
def orchestrator(clock, policy):
    decisions = InMemoryDecisionStore()
    learning = InMemoryLearningSessionStore()
    controller = AdaptiveLearningController(
        AdaptiveConfig(learning_frequency=2),
        decisions,
        learning,
        exploration_target=policy,
        clock=clock,
        min_interval_ms=0,
    )
    orch = TradingOrchestrator(
        gateway=PredictionGateway([policy]),
        decision_store=decisions,
        controller=controller,
        learning_store=learning,
        local_backend=policy,
        scheduler=ManualScheduler(),
        rng=random.Random(5),
        clock=clock,
    )
    yield orch
    orch.shutdown()


class TestDecisionLoop:
    """Tests for processing market data."""

    def test_without_session_nothing_is_recorded(self, orchestrator):
        """Outside a session decisions are neither audited nor traded."""
        actions = orchestrator.process_market_data([_falling_item(1)])

        assert len(actions) == 1
        assert actions[0].decision_id is None
        assert actions[0].trade_id is None
        assert orchestrator.decision_store.get_decisions() == []

    def test_training_session_settles_trades(self, orchestrator, clock):
        """Every executed prediction becomes a trade that settles and feeds back."""
        session_id = orchestrator.start_learning_session()
        actions = orchestrator.process_market_data([_falling_item(1), _rising_item(2), _falling_item(3)])

        assert [a.prediction.action.type.value for a in actions] == ["BUY", "SELL", "BUY"]
        assert all(a.trade_id for a in actions)
        assert len(orchestrator.tracker.get_active_trades()) == 3

        clock.now += 20_000
        orchestrator.wait_for_settlements()

        session = orchestrator.sessions.get_session(session_id)
        assert session.metrics.total_trades == 3
        assert session.metrics.episode_count == 3
        assert orchestrator.tracker.outcomes_count() == 3
        assert orchestrator.local_backend.get_model_stats()["memory_size"] == 3
        assert len(orchestrator.training_metrics) == 3

        decisions = orchestrator.decision_store.get_decisions({"session_id": session_id})
        assert len(decisions) == 3
        assert all(d.outcome is not None for d in decisions)
        assert all(d.outcome.execution_time_ms == 20_000 for d in decisions)

    def test_bad_items_are_skipped(self, orchestrator):
        """Short history and malformed items do not stop the batch."""
        orchestrator.start_learning_session()
        short = {"id": 9, "priceData": {"high": 10, "low": 9}, "priceHistory": [9, 10]}
        broken = {"id": 10, "priceData": "oops", "priceHistory": [1, 2, 3]}

        actions = orchestrator.process_market_data([short, broken, _falling_item(1)])

        assert len(actions) == 1
        assert actions[0].market_state.item_id == 1

    def test_action_frequency_throttles(self, orchestrator):
        """A zero frequency factor suppresses that action type."""
        orchestrator.start_learning_session()
        orchestrator.set_adaptive_config(action_frequency={"BUY": 0.0, "SELL": 1.0, "HOLD": 1.0})

        actions = orchestrator.process_market_data([_falling_item(1), _rising_item(2)])

        assert [a.prediction.action.type.value for a in actions] == ["SELL"]
        assert len(orchestrator.decision_store.get_decisions()) == 2

    def test_confidence_gate_outside_training(self, orchestrator, policy):
        """Without training, low-confidence predictions are not executed."""
        orchestrator.start_learning_session()
        orchestrator.pause_learning_session()
        policy.epsilon = 0.5

        assert orchestrator.process_market_data([_falling_item(1)] * 5) == []

        policy.epsilon = 0.0
        actions = orchestrator.process_market_data([_falling_item(1)])
        assert len(actions) == 1
        assert actions[0].trade_id is None
        assert orchestrator.tracker.get_active_trades() == []

    def test_adaptive_pass_triggers(self, orchestrator):
        """Settling a multiple of the learning frequency runs a learning pass."""
        session_id = orchestrator.start_learning_session()
        orchestrator.process_market_data([_falling_item(1), _falling_item(2)])
        orchestrator.wait_for_settlements()
        orchestrator.controller.shutdown(wait=True)

        assert orchestrator.controller.passes_run == 1
        records = orchestrator.learning_store.get_learning_sessions(session_id)
        assert records[0]["performance"]["total_decisions"] == 2

    def test_outcome_recorded_before_trigger(self, orchestrator, monkeypatch):
        """The trade that completes a learning batch is in the history the pass reads."""
        session_id = orchestrator.start_learning_session()
        controller = orchestrator.controller
        check_and_trigger = controller.check_and_trigger
        seen = []

        def recording(sid, completed_count):
            decisions = orchestrator.decision_store.get_decisions({"session_id": sid})
            seen.append((completed_count, sum(1 for d in decisions if d.outcome is not None)))
            return check_and_trigger(sid, completed_count)

        monkeypatch.setattr(controller, "check_and_trigger", recording)
        orchestrator.process_market_data([_falling_item(1), _falling_item(2)])
        orchestrator.wait_for_settlements()
        controller.shutdown(wait=True)

        assert seen == [(1, 1), (2, 2)]
        decisions = orchestrator.decision_store.get_decisions({"session_id": session_id})
        record = orchestrator.learning_store.get_learning_sessions(session_id)[0]
        assert record["performance"]["successful_decisions"] == sum(d.outcome.success for d in decisions)


class TestSessionControl:
    """Tests for the learning session lifecycle through the orchestrator."""

    def test_pause_resume(self, orchestrator):
        """Pausing stops training; resuming restores it."""
        orchestrator.start_learning_session()
        assert orchestrator.is_training()

        orchestrator.pause_learning_session()
        assert not orchestrator.is_training()
        actions = orchestrator.process_market_data([_falling_item(1)])
        assert actions[0].trade_id is None
        assert len(orchestrator.decision_store.get_decisions()) == 1

        orchestrator.resume_learning_session()
        assert orchestrator.is_training()

    def test_settlement_after_pause_is_not_learned(self, orchestrator):
        """Trades settling while paused are tracked but not fed back."""
        session_id = orchestrator.start_learning_session()
        orchestrator.process_market_data([_falling_item(1)])
        orchestrator.pause_learning_session()
        orchestrator.wait_for_settlements()

        assert orchestrator.tracker.outcomes_count() == 1
        assert orchestrator.sessions.get_session(session_id).metrics.total_trades == 0
        assert len(orchestrator.training_metrics) == 0

    def test_finish_cancels_pending(self, orchestrator):
        """Finishing cancels unsettled trades and persists the session."""
        session_id = orchestrator.start_learning_session({"strategy": "test"})
        orchestrator.process_market_data([_falling_item(1), _falling_item(2)])

        summary = orchestrator.finish_learning_session()

        assert summary["status"] == "COMPLETED"
        assert orchestrator.scheduler.pending_count() == 0
        outcomes = orchestrator.tracker.get_all_outcomes()
        assert [o.status for o in outcomes] == ["CANCELLED", "CANCELLED"]
        assert all(o.profit == -CANCELLATION_FEE for o in outcomes)
        assert orchestrator.sessions.get_session(session_id).status == SessionStatus.COMPLETED

        final = orchestrator.learning_store.get_learning_sessions(session_id)[-1]
        assert final["final"] is True
        assert final["session"]["config"]["extra"] == {"strategy": "test"}

    def test_finish_without_session(self, orchestrator):
        """Nothing to finish returns None."""
        assert orchestrator.finish_learning_session() is None
        assert orchestrator.pause_learning_session() is False


class TestReporting:
    """Tests for status, analytics and export."""

    def test_status_and_analytics(self, orchestrator):
        """Reports reflect settled trades."""
        orchestrator.start_learning_session()
        orchestrator.process_market_data([_falling_item(1), _rising_item(2)])
        orchestrator.wait_for_settlements()

        status = orchestrator.get_system_status()
        assert status["orchestrator"]["is_active"] is True
        assert status["orchestrator"]["last_prediction_source"] == "local"
        assert status["outcome_tracker"]["completed_trades"] == 2
        assert status["training_metrics"]["count"] == 2
        assert status["training_metrics"]["latest"]["portfolio_value"] == pytest.approx(
            1_000_000 + orchestrator.tracker.calculate_performance_metrics().net_profit
        )

        analytics = orchestrator.get_performance_analytics()
        assert analytics["overall"]["total_trades"] == 2
        assert analytics["model_evolution"]["start_epsilon"] == 0.0
        assert "trend" in analytics["by_market_condition"]

        progress = orchestrator.get_training_progress()
        assert progress["session"]["performance"]["total_trades"] == 2
        assert len(progress["recent_metrics"]) == 2

        exported = orchestrator.export_training_data()
        assert len(exported["outcomes"]) == 2
        assert exported["session"]["status"] == "TRAINING"

    def test_save_model_uses_session(self, orchestrator, clock):
        """A saved model records the session duration and episodes."""
        orchestrator.start_learning_session()
        orchestrator.process_market_data([_falling_item(1)])
        orchestrator.wait_for_settlements()
        clock.now += 90_000

        metadata = orchestrator.save_model_with_metadata("ge-policy", "0.1.0")
        assert metadata.training_episodes == 1
        assert metadata.training_duration_ms == 90_000

        promoted = orchestrator.set_model_as_production("ge-policy")
        assert promoted.status.value == "production"
        assert orchestrator.get_model_performance_comparison()["summary"]["total_models"] == 1

    def test_opportunities_use_live_config(self, orchestrator):
        """Opportunity screening follows the adaptive item value cap."""
        prices = {
            1: {"high": 1_200_000, "low": 1_000_000, "volume": 5000},
            2: {"high": 3_000_000_000, "low": 2_500_000_000},
        }
        result = orchestrator.find_trading_opportunities(prices)
        assert [o["item_id"] for o in result["opportunities"]] == [1]
        assert result["summary"]["total_analyzed"] == 2


class TestFromConfig:
    """Tests for wiring from configuration."""

    def _write(self, tmp_path, extra=""):
        path = tmp_path / "config.yaml"
        path.write_text(
            "app:\n"
            "  env: test\n"
            "  log_level: INFO\n"
            f"  log_dir: {tmp_path / 'logs'}\n"
            "  log_file: test.log\n"
            "storage:\n"
            f"  decisions_db: {tmp_path / 'decisions.db'}\n"
            f"  learning_sessions_log: {tmp_path / 'sessions.jsonl'}\n"
            f"  model_registry_dir: {tmp_path / 'registry'}\n"
            + extra
        )
        return load_config(path)

    def test_local_only(self, tmp_path):
        """Without a remote URL the chain is local then static."""
        orch = TradingOrchestrator.from_config(self._write(tmp_path), in_memory=True)
        assert [b.name for b in orch.gateway.backends] == ["local", "static"]
        orch.shutdown()

    def test_remote_and_persistent_stores(self, tmp_path):
        """A remote URL puts the HTTP backend first; stores live on disk."""
        cfg = self._write(tmp_path, "prediction:\n  remote_url: http://localhost:9\n  seed: 3\n")
        orch = TradingOrchestrator.from_config(cfg)

        assert [b.name for b in orch.gateway.backends] == ["remote", "local", "static"]
        assert (tmp_path / "decisions.db").exists()
        assert (tmp_path / "registry").is_dir()
        orch.shutdown()
