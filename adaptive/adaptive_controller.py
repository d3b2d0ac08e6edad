"""Adaptive Learning Controller - rate-limited feedback loop

Completed trade → trigger check → (background) learning pass:
1. Read the session's recent decisions from the audit store
2. Aggregate success rate / profit / profit factor / per-action stats
3. Derive rule-based adaptive actions
4. Apply them to the live AdaptiveConfig
5. Persist one learning-session record

A pass never raises: failures are logged at the pass boundary so the decision
loop is unaffected.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

from storage.decision_store import DecisionAuditStore
from storage.learning_store import LearningSessionStore
from trading.trade_model import ActionType, Decision


logger = logging.getLogger(__name__)

MIN_INTERVAL_MS = 60_000
LOOKBACK_MS = 24 * 60 * 60 * 1000
DECISION_LIMIT = 1000
MIN_CONFIDENCE_ADJUSTMENT = -0.5
HIGH_CONFIDENCE = 0.8


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


class AdaptiveActionType(Enum):
    INCREASE_EXPLORATION = "INCREASE_EXPLORATION"
    INCREASE_RISK_TOLERANCE = "INCREASE_RISK_TOLERANCE"
    IMPROVE_RISK_MANAGEMENT = "IMPROVE_RISK_MANAGEMENT"
    REDUCE_ACTION_FREQUENCY = "REDUCE_ACTION_FREQUENCY"
    RECALIBRATE_CONFIDENCE = "RECALIBRATE_CONFIDENCE"


@dataclass(frozen=True)
class AdaptiveAction:
    type: AdaptiveActionType
    reason: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "reason": self.reason, "parameters": dict(self.parameters)}


@dataclass
class AdaptiveConfig:
    """Live trading configuration retuned by the controller."""
    enable_online_learning: bool = True
    learning_frequency: int = 10
    min_profit_margin: float = 0.05
    max_item_value: float = 2_000_000_000
    min_item_value: float = 1_000_000_000
    focus_on_high_volume: bool = True
    exploration_boost: bool = False
    confidence_adjustment: float = 0.0
    action_frequency: dict[str, float] = field(
        default_factory=lambda: {a.value: 1.0 for a in ActionType}
    )

    def to_dict(self) -> dict:
        return {
            "enable_online_learning": self.enable_online_learning,
            "learning_frequency": self.learning_frequency,
            "min_profit_margin": self.min_profit_margin,
            "max_item_value": self.max_item_value,
            "min_item_value": self.min_item_value,
            "focus_on_high_volume": self.focus_on_high_volume,
            "exploration_boost": self.exploration_boost,
            "confidence_adjustment": self.confidence_adjustment,
            "action_frequency": dict(self.action_frequency),
        }


@dataclass(frozen=True)
class ActionStats:
    total: int = 0
    successful: int = 0
    profit: float = 0.0

    def to_dict(self) -> dict:
        return {"total": self.total, "successful": self.successful, "profit": self.profit}


@dataclass(frozen=True)
class PerformanceAnalysis:
    total_decisions: int
    successful_decisions: int
    success_rate: float
    average_profit: float
    total_profit: float
    total_loss: float
    profit_factor: float
    high_confidence_successes: int
    low_confidence_successes: int
    action_performance: dict[str, ActionStats]
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "total_decisions": self.total_decisions,
            "successful_decisions": self.successful_decisions,
            "success_rate": self.success_rate,
            "average_profit": self.average_profit,
            "total_profit": self.total_profit,
            "total_loss": self.total_loss,
            "profit_factor": self.profit_factor,
            "high_confidence_successes": self.high_confidence_successes,
            "low_confidence_successes": self.low_confidence_successes,
            "action_performance": {k: v.to_dict() for k, v in self.action_performance.items()},
            "timestamp": self.timestamp,
        }


class ExplorationTarget(Protocol):
    def increase_exploration(self, amount: float) -> float:
        ...

    def get_model_stats(self) -> dict:
        ...


def analyze_decisions(decisions: Sequence[Decision], now_ms: int) -> Optional[PerformanceAnalysis]:
    """
    Aggregate decision history.

    Every decision counts towards ``total_decisions``; only those with an
    attached outcome contribute to successes and profit. Returns ``None`` for
    an empty history.
    """
    if not decisions:
        return None

    successful = 0
    total_profit = 0.0
    total_loss = 0.0
    high_conf = 0
    low_conf = 0
    per_action = {a.value: [0, 0, 0.0] for a in ActionType}

    for decision in decisions:
        outcome = decision.outcome
        if outcome is None:
            continue

        if outcome.success:
            successful += 1
            if decision.confidence > HIGH_CONFIDENCE:
                high_conf += 1
            else:
                low_conf += 1

        if outcome.profit_loss > 0:
            total_profit += outcome.profit_loss
        else:
            total_loss += abs(outcome.profit_loss)

        stats = per_action[decision.action.type.value]
        stats[0] += 1
        if outcome.success:
            stats[1] += 1
        stats[2] += outcome.profit_loss

    total = len(decisions)
    if total_loss > 0:
        profit_factor = total_profit / total_loss
    else:
        profit_factor = 5.0 if total_profit > 0 else 1.0

    return PerformanceAnalysis(
        total_decisions=total,
        successful_decisions=successful,
        success_rate=successful / total * 100.0,
        average_profit=(total_profit - total_loss) / total,
        total_profit=total_profit,
        total_loss=total_loss,
        profit_factor=profit_factor,
        high_confidence_successes=high_conf,
        low_confidence_successes=low_conf,
        action_performance={
            k: ActionStats(total=v[0], successful=v[1], profit=v[2]) for k, v in per_action.items()
        },
        timestamp=now_ms,
    )


def derive_adaptive_actions(analysis: PerformanceAnalysis) -> list[AdaptiveAction]:
    actions: list[AdaptiveAction] = []

    if analysis.success_rate < 50:
        actions.append(AdaptiveAction(
            type=AdaptiveActionType.INCREASE_EXPLORATION,
            reason=f"Low success rate: {analysis.success_rate:.1f}%",
            parameters={"epsilon_increase": 0.1},
        ))

    if analysis.success_rate > 70 and analysis.average_profit < 1000:
        actions.append(AdaptiveAction(
            type=AdaptiveActionType.INCREASE_RISK_TOLERANCE,
            reason=f"High success rate but low profit: {analysis.average_profit:.0f} GP avg",
            parameters={"min_profit_threshold": analysis.average_profit * 1.5},
        ))

    if analysis.profit_factor < 1.2:
        actions.append(AdaptiveAction(
            type=AdaptiveActionType.IMPROVE_RISK_MANAGEMENT,
            reason=f"Poor profit factor: {analysis.profit_factor:.2f}",
            parameters={"stop_loss_increase": 0.05},
        ))

    for action_type, stats in analysis.action_performance.items():
        if stats.total > 10:
            rate = stats.successful / stats.total * 100.0
            if rate < 30:
                actions.append(AdaptiveAction(
                    type=AdaptiveActionType.REDUCE_ACTION_FREQUENCY,
                    reason=f"Poor {action_type} performance: {rate:.1f}%",
                    parameters={"action_type": action_type, "frequency_reduction": 0.3},
                ))

    if (
        analysis.high_confidence_successes < analysis.low_confidence_successes
        and analysis.total_decisions > 50
    ):
        actions.append(AdaptiveAction(
            type=AdaptiveActionType.RECALIBRATE_CONFIDENCE,
            reason="High confidence decisions underperforming",
            parameters={"confidence_adjustment": -0.1},
        ))

    return actions


class AdaptiveLearningController:
    """
    Rate-limited adaptive learning loop.

    Fires when online learning is enabled, the completed-trade count is a
    positive multiple of ``learning_frequency`` and at least ``min_interval_ms``
    has passed since the previous run (or since the controller started).
    """

    def __init__(
        self,
        config: AdaptiveConfig,
        decision_store: DecisionAuditStore,
        learning_store: Optional[LearningSessionStore] = None,
        *,
        exploration_target: Optional[ExplorationTarget] = None,
        clock: Optional[Callable[[], int]] = None,
        min_interval_ms: int = MIN_INTERVAL_MS,
        lookback_ms: int = LOOKBACK_MS,
        decision_limit: int = DECISION_LIMIT,
    ):
        if config.learning_frequency <= 0:
            raise ValueError(f"learning_frequency must be > 0, got {config.learning_frequency}")
        self.config = config
        self.decision_store = decision_store
        self.learning_store = learning_store
        self.exploration_target = exploration_target
        self._clock = clock or _utc_now_ms
        self.min_interval_ms = min_interval_ms
        self.lookback_ms = lookback_ms
        self.decision_limit = decision_limit

        self._lock = threading.Lock()
        self._last_run_ms = self._clock()
        self._last_claimed_count = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self.passes_run = 0

        logger.info("Adaptive learning controller initialized")

    def should_trigger(self, completed_count: int) -> bool:
        """Check the trigger condition and, if it holds, claim this run.

        Claiming resets the interval clock, so concurrent callers observe at
        most one successful claim per window.
        """
        with self._lock:
            if not self.config.enable_online_learning:
                return False
            if completed_count <= 0 or completed_count % self.config.learning_frequency != 0:
                return False
            if completed_count == self._last_claimed_count:
                return False
            now = self._clock()
            if now - self._last_run_ms < self.min_interval_ms:
                return False
            self._last_run_ms = now
            self._last_claimed_count = completed_count
            return True

    def check_and_trigger(self, session_id: str, completed_count: int) -> Optional[Future]:
        """Fire-and-forget: schedule a pass on the background worker if triggered."""
        if not self.should_trigger(completed_count):
            return None

        logger.info(f"Adaptive learning triggered at {completed_count} completed trades")
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="adaptive")
        future = self._executor.submit(self.run_pass, session_id)
        future.add_done_callback(self._log_completion)
        return future

    @staticmethod
    def _log_completion(future: Future) -> None:
        record = future.result()
        if record is None:
            logger.info("Adaptive learning pass finished without changes")
        else:
            logger.info(
                f"Adaptive learning pass finished: {len(record['adaptive_actions'])} actions applied"
            )

    def run_pass(self, session_id: str) -> Optional[dict]:
        """One learning pass; returns the persisted record, or ``None`` when there was nothing to learn from."""
        try:
            now = self._clock()
            decisions = self.decision_store.get_decisions(
                {"session_id": session_id, "start_time": now - self.lookback_ms},
                sort="desc",
                limit=self.decision_limit,
            )
            analysis = analyze_decisions(decisions, now)
            if analysis is None:
                logger.warning(f"No decision history for session {session_id}; skipping adaptive pass")
                return None

            logger.info(
                f"Adaptive pass for {session_id}: success_rate={analysis.success_rate:.1f}% "
                f"avg_profit={analysis.average_profit:.0f} GP decisions={analysis.total_decisions} "
                f"profit_factor={analysis.profit_factor:.2f}"
            )

            actions = derive_adaptive_actions(analysis)
            for action in actions:
                self.apply_adaptive_action(action)

            record = {
                "session_id": session_id,
                "timestamp": now,
                "performance": analysis.to_dict(),
                "adaptive_actions": [a.to_dict() for a in actions],
                "model_stats": self._model_stats(),
                "config": self.get_config(),
            }
            if self.learning_store is not None:
                try:
                    self.learning_store.save_learning_session(record)
                except Exception as e:
                    logger.error(f"Failed to save learning session for {session_id}: {e}")

            with self._lock:
                self.passes_run += 1
            return record
        except Exception as e:
            logger.error(f"Adaptive learning pass failed for {session_id}: {e}", exc_info=True)
            return None

    def _model_stats(self) -> dict:
        if self.exploration_target is None:
            return {}
        try:
            return dict(self.exploration_target.get_model_stats())
        except Exception as e:
            logger.warning(f"Failed to read model stats: {e}")
            return {}

    def apply_adaptive_action(self, action: AdaptiveAction) -> None:
        logger.info(f"Applying adaptive action {action.type.value}: {action.reason}")
        params = action.parameters

        with self._lock:
            cfg = self.config
            if action.type == AdaptiveActionType.INCREASE_EXPLORATION:
                cfg.exploration_boost = True
            elif action.type == AdaptiveActionType.INCREASE_RISK_TOLERANCE:
                threshold = params.get("min_profit_threshold")
                if threshold:
                    cfg.min_profit_margin = max(0.0, threshold / 100_000)
            elif action.type == AdaptiveActionType.IMPROVE_RISK_MANAGEMENT:
                cfg.max_item_value = max(cfg.max_item_value * 0.9, cfg.min_item_value)
            elif action.type == AdaptiveActionType.REDUCE_ACTION_FREQUENCY:
                key = params.get("action_type")
                if key in cfg.action_frequency:
                    cfg.action_frequency[key] *= 1.0 - float(params.get("frequency_reduction", 0.0))
            elif action.type == AdaptiveActionType.RECALIBRATE_CONFIDENCE:
                cfg.confidence_adjustment = max(
                    MIN_CONFIDENCE_ADJUSTMENT,
                    cfg.confidence_adjustment + float(params.get("confidence_adjustment", 0.0)),
                )

        if action.type == AdaptiveActionType.INCREASE_EXPLORATION and self.exploration_target is not None:
            epsilon = self.exploration_target.increase_exploration(float(params.get("epsilon_increase", 0.0)))
            logger.info(f"Exploration increased, epsilon={epsilon:.3f}")

    def get_config(self) -> dict:
        with self._lock:
            return copy.deepcopy(self.config.to_dict())

    def update_config(self, **updates: Any) -> dict:
        unknown = [k for k in updates if not hasattr(self.config, k)]
        if unknown:
            raise ValueError(f"Unknown adaptive config field(s): {unknown}")
        if "learning_frequency" in updates and int(updates["learning_frequency"]) <= 0:
            raise ValueError("learning_frequency must be > 0")

        with self._lock:
            for key, value in updates.items():
                setattr(self.config, key, value)
        logger.info(f"Adaptive config updated: {sorted(updates)}")
        return self.get_config()

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
