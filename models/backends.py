"""Prediction backends.

Each backend turns a ``MarketState`` into a ``Prediction``. They are chained by
``models.gateway.PredictionGateway`` in priority order:

- ``RemotePredictionBackend``: HTTP JSON model server, bounded timeout and a
  consecutive-failure circuit breaker
- ``HeuristicBackend``: local epsilon-greedy policy over indicator-derived
  Q-values
- ``StaticHoldBackend``: HOLD with floor confidence, never fails
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

import numpy as np
import requests

from core.exceptions import BackendUnavailableError, PredictionError
from features.market_state import MarketState, Trend, encode_features
from trading.trade_model import ActionType, TradeAction


logger = logging.getLogger(__name__)

PREDICT_PATH = "/api/v1/predictions/predict"

# numeric action codes used by the model server
ACTION_CODES = {0: ActionType.BUY, 1: ActionType.HOLD, 2: ActionType.SELL}

# q-value order for the local policy
Q_ORDER = (ActionType.BUY, ActionType.SELL, ActionType.HOLD)

FALLBACK_CONFIDENCE = 0.1


@dataclass(frozen=True)
class Prediction:
    action: TradeAction
    confidence: float
    expected_return: float
    q_values: list[float]
    source_backend: str
    reasoning: str = ""
    model_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "action": self.action.to_dict(),
            "confidence": self.confidence,
            "expected_return": self.expected_return,
            "q_values": list(self.q_values),
            "source_backend": self.source_backend,
            "reasoning": self.reasoning,
            "model_id": self.model_id,
        }


class PredictionBackend(Protocol):
    name: str

    def predict(self, state: MarketState) -> Prediction:
        ...


class CircuitState:
    """Circuit breaker states"""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Requests short-circuited
    HALF_OPEN = "half_open"  # One trial request allowed


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Opens after ``failure_threshold`` failures in a row; after ``cooldown_s``
    lets a single trial request through and closes again on its success.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_s: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at >= self.cooldown_s:
                    self._state = CircuitState.HALF_OPEN
                    return True
                return False
            # a trial request is already in flight
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit breaker closed after successful trial request")
            self._state = CircuitState.CLOSED
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit breaker opened after {self._failures} consecutive failures"
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()


def _finite(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PredictionError(f"Malformed prediction response: {field_name}={value!r}")
    f = float(value)
    if not math.isfinite(f):
        raise PredictionError(f"Malformed prediction response: {field_name}={value!r}")
    return f


def parse_remote_action(payload: Mapping[str, Any]) -> tuple[ActionType, int]:
    """Normalize the ``action`` of a model server response.

    Accepts a numeric code (0=BUY, 1=HOLD, 2=SELL), an action name, or an
    object with ``type``/``action`` (and optionally ``quantity``). A top-level
    ``action_name`` overrides whatever ``action`` says.
    """
    raw = payload.get("action")
    quantity = 1

    if isinstance(raw, Mapping):
        try:
            quantity = int(raw.get("quantity") or 1)
        except (TypeError, ValueError) as e:
            raise PredictionError(
                f"Malformed prediction response: quantity={raw.get('quantity')!r}"
            ) from e
        raw = raw.get("type", raw.get("action"))

    action_type: Optional[ActionType] = None
    if isinstance(raw, bool):
        raw = None
    if isinstance(raw, int):
        action_type = ACTION_CODES.get(raw)
    elif isinstance(raw, str):
        try:
            action_type = ActionType.parse(raw)
        except ValueError:
            action_type = None

    name = payload.get("action_name")
    if isinstance(name, str) and name.strip():
        try:
            action_type = ActionType.parse(name)
        except ValueError as e:
            raise PredictionError(f"Malformed prediction response: {e}") from e

    if action_type is None:
        raise PredictionError(f"Malformed prediction response: action={payload.get('action')!r}")
    return action_type, max(1, quantity)


class RemotePredictionBackend:
    name = "remote"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 5.0,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[requests.Session] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.url = base_url.rstrip("/") + PREDICT_PATH
        self.timeout_s = timeout_s
        self.breaker = breaker or CircuitBreaker()
        self._session = session or requests.Session()
        self._clock = clock or (lambda: int(time.time() * 1000))

    def predict(self, state: MarketState) -> Prediction:
        if not self.breaker.allow_request():
            raise BackendUnavailableError("Remote prediction backend circuit is open")

        now = self._clock()
        body = {
            "observation": encode_features(state, now_ms=now),
            "item_id": state.item_id,
            "feature_engineering": True,
            "timestamp": now,
        }
        try:
            response = self._session.post(self.url, json=body, timeout=self.timeout_s)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            self.breaker.record_failure()
            raise BackendUnavailableError(f"Remote prediction failed: {e}") from e

        try:
            prediction = self._parse(payload, state)
        except PredictionError:
            self.breaker.record_failure()
            raise
        except Exception as e:
            # a half-open trial must always settle the breaker
            self.breaker.record_failure()
            raise PredictionError(f"Malformed prediction response: {e}") from e
        self.breaker.record_success()
        return prediction

    def _parse(self, payload: Any, state: MarketState) -> Prediction:
        if not isinstance(payload, Mapping):
            raise PredictionError(f"Malformed prediction response: {type(payload).__name__}")

        action_type, quantity = parse_remote_action(payload)

        confidence = _finite(payload.get("confidence"), "confidence")
        if not 0.0 <= confidence <= 1.0:
            raise PredictionError(f"Malformed prediction response: confidence={confidence}")

        q_raw = payload.get("q_values") or []
        if not isinstance(q_raw, (list, tuple)):
            raise PredictionError(f"Malformed prediction response: q_values={q_raw!r}")
        q_values = [_finite(q, "q_values") for q in q_raw]

        expected = payload.get("expected_return")
        expected_return = _finite(expected, "expected_return") if expected is not None else 0.0

        model_id = payload.get("model_id", payload.get("model_version"))
        return Prediction(
            action=TradeAction(
                type=action_type,
                item_id=state.item_id,
                quantity=quantity,
                price=state.price,
                reason="Remote model prediction",
            ),
            confidence=confidence,
            expected_return=expected_return,
            q_values=q_values,
            source_backend=self.name,
            reasoning=f"Remote model {model_id or 'unknown'} chose {action_type.value}",
            model_id=str(model_id) if model_id is not None else None,
        )


@dataclass(frozen=True)
class Experience:
    state: MarketState
    action: TradeAction
    reward: float
    next_state: MarketState


def indicator_q_values(state: MarketState) -> list[float]:
    """Q-values in ``Q_ORDER`` from RSI, trend, spread and volatility."""
    momentum = {Trend.UP: 1.0, Trend.DOWN: -1.0, Trend.FLAT: 0.0}[state.trend]
    rsi_signal = (50.0 - state.rsi) / 50.0
    spread_bonus = min(state.spread_percent, 20.0) / 100.0

    q_buy = 0.5 + 0.25 * rsi_signal + 0.15 * momentum + spread_bonus
    q_sell = 0.5 - 0.25 * rsi_signal - 0.15 * momentum
    q_hold = 0.45 + min(state.volatility, 10.0) / 100.0
    return [float(q) for q in np.round([q_buy, q_sell, q_hold], 6)]


@dataclass
class HeuristicBackend:
    """Local epsilon-greedy policy.

    Explores with probability ``epsilon`` (confidence = epsilon), otherwise
    takes the greedy action (confidence = 1 - epsilon). Settled trades are fed
    back through ``learn``, which decays epsilon towards ``epsilon_min``.
    """

    epsilon: float = 0.1
    epsilon_min: float = 0.01
    epsilon_decay: float = 0.995
    memory_capacity: int = 10_000
    rng: random.Random = field(default_factory=random.Random)
    name: str = "local"

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._memory: deque[Experience] = deque(maxlen=self.memory_capacity)
        self.total_steps = 0
        self.total_episodes = 0
        self.initial_epsilon = self.epsilon

    def predict(self, state: MarketState) -> Prediction:
        q_values = indicator_q_values(state)
        with self._lock:
            epsilon = self.epsilon
            explore = self.rng.random() < epsilon
            if explore:
                action_type = self.rng.choice(Q_ORDER)
                quantity = self.rng.randint(1, 100)
            else:
                idx = int(np.argmax(q_values))
                action_type = Q_ORDER[idx]
                quantity = int(abs(q_values[idx]) * 10) + 1
            self.total_steps += 1

        confidence = epsilon if explore else 1.0 - epsilon
        reason = "Random exploration" if explore else f"Q-value based decision ({max(q_values):.3f})"
        return Prediction(
            action=TradeAction(
                type=action_type,
                item_id=state.item_id,
                quantity=quantity,
                price=state.price,
                reason=reason,
            ),
            confidence=float(min(1.0, max(0.0, confidence))),
            expected_return=max(q_values),
            q_values=q_values,
            source_backend=self.name,
            reasoning=reason,
        )

    def learn(self, state: MarketState, action: TradeAction, reward: float, next_state: MarketState) -> None:
        with self._lock:
            self._memory.append(Experience(state, action, float(reward), next_state))
            self.total_episodes += 1
            self.epsilon = max(self.epsilon_min, self.epsilon * self.epsilon_decay)

    def increase_exploration(self, amount: float) -> float:
        with self._lock:
            self.epsilon = min(1.0, self.epsilon + amount)
            return self.epsilon

    def get_model_stats(self) -> dict:
        with self._lock:
            rewards = [e.reward for e in self._memory]
            return {
                "epsilon": self.epsilon,
                "epsilon_min": self.epsilon_min,
                "memory_size": len(self._memory),
                "memory_capacity": self.memory_capacity,
                "total_steps": self.total_steps,
                "total_episodes": self.total_episodes,
                "average_reward": float(np.mean(rewards)) if rewards else 0.0,
            }


class StaticHoldBackend:
    name = "static"

    def predict(self, state: MarketState) -> Prediction:
        return Prediction(
            action=TradeAction(
                type=ActionType.HOLD,
                item_id=state.item_id,
                quantity=1,
                price=state.price,
                reason="AI services unavailable - holding position",
            ),
            confidence=FALLBACK_CONFIDENCE,
            expected_return=0.0,
            q_values=[0.1, 0.1, 0.8],
            source_backend=self.name,
            reasoning="AI services unavailable - holding position",
        )
