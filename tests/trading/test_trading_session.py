"""
Tests for the trading session lifecycle.
"""
import pytest

from core.exceptions import InvalidSessionTransition, SessionError, SessionNotFoundError
from trading.trading_session import SessionConfig, SessionStatus, TradingSessionManager


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return TradingSessionManager(clock=clock)


class TestSessionConfig:
    """Tests for session configuration parsing."""

    def test_defaults_and_extra(self):
        """Known keys override defaults; unknown keys are kept aside."""
        cfg = SessionConfig.from_dict({"min_profit_margin": 0.1, "strategy": "flip"})
        assert cfg.min_profit_margin == 0.1
        assert cfg.learning_frequency == 10
        assert cfg.training is False
        assert cfg.extra == {"strategy": "flip"}

    def test_learning_frequency_must_be_positive(self):
        """A zero learning frequency is rejected."""
        with pytest.raises(SessionError):
            SessionConfig.from_dict({"learning_frequency": 0})


class TestSessionLifecycle:
    """Tests for create, pause, resume and end."""

    def test_create_active_and_training(self, manager):
        """The training flag picks the initial status."""
        active = manager.create_session()
        training = manager.create_session({"training": True})

        assert active.status == SessionStatus.ACTIVE
        assert training.status == SessionStatus.TRAINING
        assert active.id != training.id
        assert active.id.startswith("session_")
        assert active.metrics.total_trades == 0

    def test_pause_and_resume_returns_to_training(self, manager):
        """Resume restores the status the session had before pausing."""
        session = manager.create_session({"training": True})
        manager.pause(session.id)
        assert manager.get_session(session.id).status == SessionStatus.PAUSED

        manager.resume(session.id)
        assert manager.get_session(session.id).status == SessionStatus.TRAINING

    def test_resume_requires_paused(self, manager):
        """Only a paused session can be resumed."""
        session = manager.create_session()
        with pytest.raises(InvalidSessionTransition):
            manager.resume(session.id)

    def test_end_paused_session(self, manager, clock):
        """A paused session can be ended; afterwards nothing else is allowed."""
        session = manager.create_session({"training": True})
        manager.pause(session.id)
        clock.now += 2_500
        ended = manager.end(session.id)

        assert ended.status == SessionStatus.COMPLETED
        assert ended.end_time == clock.now
        with pytest.raises(InvalidSessionTransition):
            manager.pause(session.id)
        with pytest.raises(InvalidSessionTransition):
            manager.resume(session.id)
        with pytest.raises(InvalidSessionTransition):
            manager.end(session.id)
        with pytest.raises(InvalidSessionTransition):
            manager.update_metrics(session.id, {"total_trades": 1})

    def test_unknown_session(self, manager):
        """Operations on unknown ids fail; lookups return None."""
        assert manager.get_session("nope") is None
        with pytest.raises(SessionNotFoundError):
            manager.pause("nope")
        with pytest.raises(SessionNotFoundError):
            manager.get_session_summary("nope")


class TestSessionMetrics:
    """Tests for metric merging."""

    def test_derived_metrics(self, manager):
        """Average reward (profit per trade) and success rate are recomputed on merge."""
        session = manager.create_session({"training": True})
        manager.update_metrics(
            session.id,
            {"episode_count": 4, "total_trades": 4, "successful_trades": 3, "total_profit": 10.0},
        )
        m = manager.get_session(session.id).metrics

        assert m.average_reward == pytest.approx(2.5)
        assert m.success_rate == pytest.approx(0.75)

    def test_counters_never_decrease(self, manager):
        """A delta that lowers a counter is rejected."""
        session = manager.create_session()
        manager.update_metrics(session.id, {"total_trades": 5})
        with pytest.raises(SessionError):
            manager.update_metrics(session.id, {"total_trades": 4})

    def test_unknown_metric_rejected(self, manager):
        """Unknown metric names are rejected."""
        session = manager.create_session()
        with pytest.raises(SessionError):
            manager.update_metrics(session.id, {"sharpe": 1.0})

    def test_summary(self, manager, clock):
        """Summary reports duration and performance."""
        session = manager.create_session({"training": True})
        manager.update_metrics(session.id, {"total_trades": 2, "total_profit": 150.0})
        clock.now += 1_000

        summary = manager.get_session_summary(session.id)
        assert summary["duration_ms"] == 1_000
        assert summary["status"] == "TRAINING"
        assert summary["performance"]["total_profit"] == 150.0

    def test_new_session_metrics_are_finite(self, manager):
        """A session without settled trades starts every metric at zero."""
        session = manager.create_session()

        performance = manager.get_session_summary(session.id)["performance"]
        assert performance["best_reward"] == 0.0
        assert all(value == 0 for value in performance.values())


class TestCleanup:
    """Tests for removing old sessions."""

    def test_cleanup_keeps_running_sessions(self, manager, clock):
        """Only old paused or completed sessions are removed."""
        running = manager.create_session({"training": True})
        paused = manager.create_session()
        manager.pause(paused.id)
        done = manager.create_session()
        manager.end(done.id)
        clock.now += 25 * 60 * 60 * 1000
        fresh = manager.create_session()
        manager.end(fresh.id)

        assert manager.cleanup_old_sessions() == 2
        remaining = {s.id for s in manager.get_active_sessions()}
        assert remaining == {running.id, fresh.id}
