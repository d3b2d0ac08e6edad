"""Trading orchestrator.

Drives the decision loop for the current learning session:

    feed item → encode → predict (decision audited) → confidence gate
      → simulated execution (training only) → settlement after a random delay
      → outcome tracked → reward → session metrics → adaptive trigger

Items are processed one at a time; a failing item is logged and skipped.
Settlement runs on scheduler timers and never blocks ``process_market_data``.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from adaptive.adaptive_controller import AdaptiveConfig, AdaptiveLearningController
from core.config import TraderConfig
from core.exceptions import InsufficientHistoryError
from features.market_state import MarketState, encode_market_state
from model_registry.model_metadata import ModelMetadata
from model_registry.registry import ModelMetadataRegistry
from models.backends import (
    CircuitBreaker,
    HeuristicBackend,
    Prediction,
    PredictionBackend,
    RemotePredictionBackend,
)
from models.gateway import PredictionGateway, is_executable
from storage.decision_store import (
    DecisionAuditStore,
    InMemoryDecisionStore,
    SqliteDecisionStore,
)
from storage.learning_store import (
    InMemoryLearningSessionStore,
    JsonlLearningSessionStore,
    LearningSessionStore,
)
from storage.model_store import InMemoryModelMetadataStore, JsonModelMetadataStore
from trading.opportunities import find_trading_opportunities
from trading.outcome_tracker import TradeOutcome, TradeOutcomeTracker
from trading.simulation import (
    TradeScheduler,
    calculate_reward,
    simulate_price_movement,
    simulate_trade_success,
)
from trading.trade_model import Decision, DecisionOutcome
from trading.trading_session import SessionStatus, TradingSessionManager


logger = logging.getLogger(__name__)

TRAINING_METRICS_HISTORY = 1000
STARTING_PORTFOLIO_GP = 1_000_000


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ExecutableAction:
    """A prediction that passed the confidence gate."""
    prediction: Prediction
    market_state: MarketState
    decision_id: Optional[str]
    trade_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "prediction": self.prediction.to_dict(),
            "market_state": self.market_state.to_dict(),
            "decision_id": self.decision_id,
            "trade_id": self.trade_id,
        }


class TradingOrchestrator:
    def __init__(
        self,
        *,
        gateway: PredictionGateway,
        decision_store: DecisionAuditStore,
        controller: AdaptiveLearningController,
        tracker: Optional[TradeOutcomeTracker] = None,
        sessions: Optional[TradingSessionManager] = None,
        learning_store: Optional[LearningSessionStore] = None,
        registry: Optional[ModelMetadataRegistry] = None,
        local_backend: Optional[HeuristicBackend] = None,
        scheduler: Optional[TradeScheduler] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], int]] = None,
        confidence_threshold: float = 0.7,
        settle_delay_s: tuple[float, float] = (5.0, 35.0),
    ):
        self.gateway = gateway
        self.decision_store = decision_store
        self.controller = controller
        self.tracker = tracker or TradeOutcomeTracker(clock=clock)
        self.sessions = sessions or TradingSessionManager(clock=clock)
        self.learning_store = learning_store
        self.local_backend = local_backend
        self.scheduler = scheduler or TradeScheduler()
        self.rng = rng or random.Random()
        self._clock = clock or _utc_now_ms
        self.confidence_threshold = confidence_threshold
        self.settle_delay_s = settle_delay_s
        self.registry = registry or ModelMetadataRegistry(
            InMemoryModelMetadataStore(),
            performance_provider=self.tracker.calculate_performance_metrics,
            stats_provider=self._model_stats,
        )

        self.current_session_id: Optional[str] = None
        self.training_metrics: deque[dict] = deque(maxlen=TRAINING_METRICS_HISTORY)
        self._metrics_lock = threading.Lock()
        # trade_id -> (session_id, scheduler handle)
        self._pending: dict[str, tuple[str, int]] = {}
        self._pending_lock = threading.Lock()

        logger.info(f"Trading orchestrator initialized (backends={[b.name for b in gateway.backends]})")

    @classmethod
    def from_config(cls, config: TraderConfig, *, in_memory: bool = False) -> TradingOrchestrator:
        """Wire the full stack from a loaded ``TraderConfig``."""
        pred = config.prediction
        local = HeuristicBackend(epsilon=pred.epsilon, rng=random.Random(pred.seed))
        backends: list[PredictionBackend] = []
        if pred.remote_url:
            backends.append(
                RemotePredictionBackend(
                    pred.remote_url,
                    timeout_s=pred.timeout_s,
                    breaker=CircuitBreaker(pred.failure_threshold, pred.cooldown_s),
                )
            )
        backends.append(local)

        if in_memory:
            decision_store: DecisionAuditStore = InMemoryDecisionStore()
            learning_store: LearningSessionStore = InMemoryLearningSessionStore()
            model_store = InMemoryModelMetadataStore()
        else:
            st = config.storage
            decision_store = SqliteDecisionStore(st.decisions_db)
            learning_store = JsonlLearningSessionStore(st.learning_sessions_log)
            model_store = JsonModelMetadataStore(st.model_registry_dir)

        tr = config.trading
        le = config.learning
        adaptive_config = AdaptiveConfig(
            enable_online_learning=le.enable_online_learning,
            learning_frequency=le.learning_frequency,
            min_profit_margin=tr.min_profit_margin,
            max_item_value=tr.max_item_value,
            min_item_value=tr.min_item_value,
            focus_on_high_volume=tr.focus_on_high_volume,
        )
        controller = AdaptiveLearningController(
            adaptive_config,
            decision_store,
            learning_store,
            exploration_target=local,
            min_interval_ms=int(le.min_interval_s * 1000),
            lookback_ms=int(le.lookback_hours * 3_600_000),
            decision_limit=le.decision_limit,
        )

        tracker = TradeOutcomeTracker()
        orchestrator = cls(
            gateway=PredictionGateway(backends),
            decision_store=decision_store,
            controller=controller,
            tracker=tracker,
            learning_store=learning_store,
            local_backend=local,
            rng=random.Random(config.simulation.seed),
            confidence_threshold=tr.confidence_threshold,
            settle_delay_s=(config.simulation.min_settle_delay_s, config.simulation.max_settle_delay_s),
        )
        orchestrator.registry = ModelMetadataRegistry(
            model_store,
            performance_provider=tracker.calculate_performance_metrics,
            stats_provider=orchestrator._model_stats,
        )
        return orchestrator

    def _model_stats(self) -> dict:
        return self.local_backend.get_model_stats() if self.local_backend else {}

    # -- session lifecycle -------------------------------------------------

    def start_learning_session(self, config: Optional[Mapping[str, Any]] = None) -> str:
        if self.current_session_id is not None:
            current = self.sessions.get_session(self.current_session_id)
            if current is not None and current.status != SessionStatus.COMPLETED:
                logger.warning(f"Replacing unfinished session {current.id}")

        cfg = self.controller.get_config()
        merged = {
            "min_profit_margin": cfg["min_profit_margin"],
            "max_item_value": cfg["max_item_value"],
            "learning_frequency": cfg["learning_frequency"],
            "focus_on_high_volume": cfg["focus_on_high_volume"],
            **dict(config or {}),
            "training": True,
        }
        session = self.sessions.create_session(merged)
        self.current_session_id = session.id
        logger.info(f"Learning session started: {session.id}")
        return session.id

    def _current_status(self) -> Optional[SessionStatus]:
        if self.current_session_id is None:
            return None
        session = self.sessions.get_session(self.current_session_id)
        return session.status if session else None

    def is_training(self) -> bool:
        return self._current_status() == SessionStatus.TRAINING

    def pause_learning_session(self) -> bool:
        if self.current_session_id is None:
            return False
        self.sessions.pause(self.current_session_id)
        return True

    def resume_learning_session(self) -> bool:
        if self.current_session_id is None:
            return False
        self.sessions.resume(self.current_session_id)
        return True

    def finish_learning_session(self) -> Optional[dict]:
        """End the current session, cancel its unsettled trades and persist it."""
        session_id = self.current_session_id
        if session_id is None:
            return None

        cancelled = self._cancel_pending(session_id)
        session = self.sessions.end(session_id)
        summary = self.sessions.get_session_summary(session_id)
        logger.info(
            f"Learning session finished: {session_id} duration={summary['duration_ms']}ms "
            f"trades={session.metrics.total_trades} profit={session.metrics.total_profit:.0f} "
            f"cancelled={cancelled}"
        )

        if self.learning_store is not None:
            try:
                self.learning_store.save_learning_session(
                    {"session_id": session_id, "timestamp": self._clock(), "final": True, "session": session.to_dict()}
                )
            except Exception as e:
                logger.error(f"Failed to save learning session {session_id}: {e}")
        return summary

    def _cancel_pending(self, session_id: str) -> int:
        with self._pending_lock:
            trades = [(tid, h) for tid, (sid, h) in self._pending.items() if sid == session_id]
            for tid, _ in trades:
                del self._pending[tid]

        cancelled = 0
        for trade_id, handle in trades:
            if self.scheduler.cancel(handle):
                self.tracker.cancel_trade(trade_id)
                cancelled += 1
        return cancelled

    # -- decision loop -----------------------------------------------------

    def process_market_data(self, items: Iterable[Mapping[str, Any]]) -> list[ExecutableAction]:
        """Produce decisions for a batch of feed items; returns those that passed the gate."""
        started = self._clock()
        actions: list[ExecutableAction] = []
        session_id = self.current_session_id
        status = self._current_status()
        training = status == SessionStatus.TRAINING
        record = session_id is not None and status not in (None, SessionStatus.COMPLETED)
        cfg = self.controller.get_config()

        count = 0
        for item in items:
            count += 1
            item_id = item.get("id", item.get("itemId", item.get("item_id"))) if isinstance(item, Mapping) else None
            try:
                state = encode_market_state(item, now_ms=self._clock())
                prediction = self.gateway.predict(state)

                decision_id = None
                if record:
                    decision_id = self._save_decision(session_id, state, prediction)

                if not is_executable(
                    prediction,
                    training,
                    threshold=self.confidence_threshold,
                    adjustment=cfg["confidence_adjustment"],
                ):
                    continue

                factor = cfg["action_frequency"].get(prediction.action.type.value, 1.0)
                if factor < 1.0 and self.rng.random() >= factor:
                    logger.debug(f"Skipped {prediction.action.type.value} for item {item_id} (frequency {factor:.2f})")
                    continue

                trade_id = None
                if training:
                    trade_id = self._simulate_trade_execution(session_id, state, prediction, decision_id)
                actions.append(ExecutableAction(prediction, state, decision_id, trade_id))

                logger.debug(
                    f"Processed item {item_id}: {prediction.action.type.value} "
                    f"confidence={prediction.confidence:.3f} via {prediction.source_backend}"
                )
            except InsufficientHistoryError as e:
                logger.warning(f"Skipping item {item_id}: {e}")
            except Exception as e:
                logger.error(f"Failed to process item {item_id} - skipping: {e}", exc_info=True)

        logger.info(
            f"Market data processed: items={count} actions={len(actions)} "
            f"time={self._clock() - started}ms session={session_id}"
        )
        return actions

    def _save_decision(self, session_id: str, state: MarketState, prediction: Prediction) -> Optional[str]:
        decision = Decision(
            session_id=session_id,
            item_id=state.item_id,
            action=prediction.action,
            confidence=prediction.confidence,
            source_backend=prediction.source_backend,
            reasoning=prediction.reasoning or "Model prediction",
            timestamp=self._clock(),
            market_state=state.to_dict(),
        )
        try:
            return self.decision_store.save_decision(decision)
        except Exception as e:
            logger.error(f"Failed to save decision for item {state.item_id}: {e}")
            return None

    def _simulate_trade_execution(
        self,
        session_id: str,
        state: MarketState,
        prediction: Prediction,
        decision_id: Optional[str],
    ) -> Optional[str]:
        trade_id = f"trade_{self._clock()}_{uuid.uuid4().hex[:9]}"
        try:
            self.tracker.start_trade(trade_id, prediction.action, state, decision_id)
            lo, hi = self.settle_delay_s
            delay = self.rng.uniform(lo, hi)
            with self._pending_lock:
                handle = self.scheduler.schedule(
                    session_id, delay, self._settle_trade, session_id, trade_id, state, prediction, decision_id
                )
                self._pending[trade_id] = (session_id, handle)
        except Exception as e:
            logger.error(f"Failed to start trade simulation {trade_id}: {e}", exc_info=True)
            return None
        return trade_id

    def _settle_trade(
        self,
        session_id: str,
        trade_id: str,
        state: MarketState,
        prediction: Prediction,
        decision_id: Optional[str],
    ) -> None:
        with self._pending_lock:
            self._pending.pop(trade_id, None)

        action = prediction.action
        success = simulate_trade_success(state, action, self.rng)
        final_price = simulate_price_movement(state, action, self.rng)
        new_state = state.with_price(final_price, self._clock())

        outcome = self.tracker.complete_trade(trade_id, final_price, new_state, success)

        session = self.sessions.get_session(session_id)
        if session is not None and session.status == SessionStatus.TRAINING:
            self._process_trade_outcome(session_id, state, prediction, new_state, success, outcome, decision_id)

    def _process_trade_outcome(
        self,
        session_id: str,
        state: MarketState,
        prediction: Prediction,
        new_state: MarketState,
        success: bool,
        outcome: TradeOutcome,
        decision_id: Optional[str],
    ) -> None:
        reward = calculate_reward(state, prediction.action, new_state, success, outcome.profit)

        if self.local_backend is not None:
            self.local_backend.learn(state, prediction.action, reward.total, new_state)

        self._update_training_metrics(session_id, outcome, reward.total)

        if decision_id is not None:
            try:
                self.decision_store.update_decision_outcome(
                    decision_id,
                    DecisionOutcome(
                        success=success,
                        profit_loss=outcome.profit,
                        final_price=new_state.price,
                        execution_time_ms=new_state.timestamp - state.timestamp,
                        reward=reward.total,
                        trade_id=outcome.trade_id,
                    ),
                )
            except Exception as e:
                logger.error(f"Failed to update outcome of decision {decision_id}: {e}")

        self.controller.check_and_trigger(session_id, self.tracker.outcomes_count())

    def _update_training_metrics(self, session_id: str, outcome: TradeOutcome, reward: float) -> None:
        stats = self._model_stats()
        perf = self.tracker.calculate_performance_metrics()

        with self._metrics_lock:
            session = self.sessions.get_session(session_id)
            if session is None or session.status == SessionStatus.COMPLETED:
                return
            m = session.metrics
            session = self.sessions.update_metrics(
                session_id,
                {
                    "episode_count": m.episode_count + 1,
                    "total_trades": m.total_trades + 1,
                    "successful_trades": m.successful_trades + (1 if outcome.success else 0),
                    "total_profit": m.total_profit + outcome.profit,
                    "best_reward": max(m.best_reward, reward),
                },
            )
            self.training_metrics.append({
                "episode": session.metrics.episode_count,
                "total_reward": reward,
                "average_reward": stats.get("average_reward", 0.0),
                "epsilon": stats.get("epsilon"),
                "trades_executed": perf.total_trades,
                "success_rate": perf.success_rate,
                "profitability": perf.net_profit,
                "portfolio_value": STARTING_PORTFOLIO_GP + perf.net_profit,
                "drawdown": perf.max_drawdown,
                "timestamp": self._clock(),
            })

    def wait_for_settlements(self, timeout: Optional[float] = None) -> None:
        self.scheduler.wait_all(timeout)

    def shutdown(self) -> None:
        if self.current_session_id is not None:
            self._cancel_pending(self.current_session_id)
        self.scheduler.shutdown()
        self.controller.shutdown(wait=True)

    # -- reporting ---------------------------------------------------------

    def get_training_progress(self) -> dict:
        session = None
        if self.current_session_id is not None:
            session = self.sessions.get_session_summary(self.current_session_id)
        with self._metrics_lock:
            recent = list(self.training_metrics)[-50:]
        return {
            "session": session,
            "recent_metrics": recent,
            "performance": self.tracker.calculate_performance_metrics().to_dict(),
            "model_stats": self._model_stats(),
        }

    def get_performance_analytics(self) -> dict:
        stats = self._model_stats()
        with self._metrics_lock:
            recent = list(self.training_metrics)[-100:]
        return {
            "overall": self.tracker.calculate_performance_metrics().to_dict(),
            "by_market_condition": self.tracker.get_trade_analytics_by_market_condition(),
            "recent_trends": recent,
            "model_evolution": {
                "start_epsilon": self.local_backend.initial_epsilon if self.local_backend else None,
                "current_epsilon": stats.get("epsilon"),
                "total_steps": stats.get("total_steps", 0),
            },
        }

    def get_system_status(self) -> dict:
        session = None
        if self.current_session_id is not None:
            found = self.sessions.get_session(self.current_session_id)
            session = found.to_dict() if found else None
        with self._metrics_lock:
            latest = self.training_metrics[-1] if self.training_metrics else None
            count = len(self.training_metrics)
        return {
            "orchestrator": {
                "is_active": session is not None and session["status"] != SessionStatus.COMPLETED.value,
                "current_session": session,
                "adaptive_config": self.controller.get_config(),
                "adaptive_passes": self.controller.passes_run,
                "last_prediction_source": self.gateway.last_source,
                "pending_settlements": self.scheduler.pending_count(),
            },
            "agent": self._model_stats(),
            "outcome_tracker": self.tracker.get_stats(),
            "training_metrics": {"count": count, "latest": latest},
        }

    def export_training_data(self) -> dict:
        with self._metrics_lock:
            metrics = list(self.training_metrics)
        session = self.sessions.get_session(self.current_session_id) if self.current_session_id else None
        return {
            "outcomes": [o.to_dict() for o in self.tracker.get_all_outcomes()],
            "metrics": metrics,
            "model_stats": self._model_stats(),
            "session": session.to_dict() if session else None,
        }

    def set_adaptive_config(self, **updates: Any) -> dict:
        return self.controller.update_config(**updates)

    def get_adaptive_config(self) -> dict:
        return self.controller.get_config()

    def find_trading_opportunities(self, current_prices: Mapping[Any, Mapping[str, Any]], limit: int = 50) -> dict:
        cfg = self.controller.get_config()
        return find_trading_opportunities(
            current_prices,
            max_item_value=cfg["max_item_value"],
            min_profit_margin=cfg["min_profit_margin"],
            limit=limit,
        )

    # -- model registry ----------------------------------------------------

    def save_model_with_metadata(self, model_id: str, version: str, description: str = "") -> ModelMetadata:
        duration_ms = 0
        episodes = 0
        if self.current_session_id is not None:
            session = self.sessions.get_session(self.current_session_id)
            if session is not None:
                end = session.end_time if session.end_time is not None else self._clock()
                duration_ms = end - session.start_time
                episodes = session.metrics.episode_count
        return self.registry.save_model_with_metadata(
            model_id,
            version,
            description,
            training_duration_ms=duration_ms,
            training_episodes=episodes,
        )

    def set_model_as_production(self, model_id: str) -> ModelMetadata:
        promoted = self.registry.set_model_as_production(model_id)
        self.registry.load_model_with_metadata(model_id)
        return promoted

    def get_model_performance_comparison(self, limit: int = 10) -> dict:
        return self.registry.get_model_performance_comparison(limit)
