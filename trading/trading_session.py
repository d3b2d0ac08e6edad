"""Trading session lifecycle.

A session groups the decisions and trades of one trading/training run. Sessions
live in memory keyed by id; the manager serializes all mutations behind a lock.

    ACTIVE/TRAINING --pause--> PAUSED --resume--> ACTIVE/TRAINING
    ACTIVE/TRAINING/PAUSED --end--> COMPLETED (terminal)
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from core.exceptions import InvalidSessionTransition, SessionError, SessionNotFoundError


logger = logging.getLogger(__name__)

DEFAULT_MAX_SESSION_AGE_MS = 24 * 60 * 60 * 1000


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


class SessionStatus(Enum):
    ACTIVE = "ACTIVE"
    TRAINING = "TRAINING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"

    @property
    def is_running(self) -> bool:
        return self in (SessionStatus.ACTIVE, SessionStatus.TRAINING)


@dataclass(frozen=True)
class SessionConfig:
    min_profit_margin: float = 0.05
    max_item_value: float = 2_000_000_000
    learning_frequency: int = 10
    exploration_boost: bool = True
    focus_on_high_volume: bool = True
    training: bool = False
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]] = None) -> SessionConfig:
        """Merge user supplied values over the defaults; unknown keys go to ``extra``."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs = {k: data.pop(k) for k in list(data) if k in known}
        extra = dict(data.pop("extra", None) or {})
        extra.update(data)
        cfg = cls(**kwargs, extra=extra)
        if cfg.learning_frequency <= 0:
            raise SessionError(f"learning_frequency must be > 0, got {cfg.learning_frequency}")
        return cfg

    def to_dict(self) -> dict:
        return {
            "min_profit_margin": self.min_profit_margin,
            "max_item_value": self.max_item_value,
            "learning_frequency": self.learning_frequency,
            "exploration_boost": self.exploration_boost,
            "focus_on_high_volume": self.focus_on_high_volume,
            "training": self.training,
            "extra": dict(self.extra),
        }


_COUNTER_FIELDS = ("episode_count", "total_trades", "successful_trades")


@dataclass(frozen=True)
class SessionMetrics:
    episode_count: int = 0
    total_trades: int = 0
    successful_trades: int = 0
    total_profit: float = 0.0
    best_reward: float = 0.0
    average_reward: float = 0.0
    success_rate: float = 0.0

    def merged(self, delta: Mapping[str, Any]) -> SessionMetrics:
        """Return a copy with ``delta`` merged and derived fields recomputed.

        Raises:
            SessionError: unknown field, or a counter would decrease
        """
        allowed = {f.name for f in fields(self)} - {"average_reward", "success_rate"}
        unknown = set(delta) - allowed
        if unknown:
            raise SessionError(f"Unknown session metric(s): {sorted(unknown)}")

        for name in _COUNTER_FIELDS:
            if name in delta and delta[name] < getattr(self, name):
                raise SessionError(
                    f"Session metric {name} cannot decrease "
                    f"({getattr(self, name)} -> {delta[name]})"
                )

        updated = replace(self, **dict(delta))
        if updated.total_trades > 0:
            updated = replace(
                updated,
                average_reward=updated.total_profit / updated.total_trades,
                success_rate=updated.successful_trades / updated.total_trades,
            )
        return updated

    def to_dict(self) -> dict:
        return {
            "episode_count": self.episode_count,
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "total_profit": self.total_profit,
            "best_reward": self.best_reward,
            "average_reward": self.average_reward,
            "success_rate": self.success_rate,
        }


@dataclass
class TradingSession:
    id: str
    start_time: int
    config: SessionConfig
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    status: SessionStatus = SessionStatus.ACTIVE
    end_time: Optional[int] = None
    last_updated: Optional[int] = None
    model_version: str = "1.0"
    # running status to return to on resume
    resume_status: Optional[SessionStatus] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "metrics": self.metrics.to_dict(),
            "last_updated": self.last_updated,
            "model_version": self.model_version,
        }


def _new_session_id(now_ms: int) -> str:
    return f"session_{now_ms}_{uuid.uuid4().hex[:9]}"


class TradingSessionManager:
    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or _utc_now_ms
        self._lock = threading.Lock()
        self._sessions: dict[str, TradingSession] = {}

    def create_session(self, config: Optional[Mapping[str, Any] | SessionConfig] = None) -> TradingSession:
        cfg = config if isinstance(config, SessionConfig) else SessionConfig.from_dict(config)
        now = self._clock()
        session = TradingSession(
            id=_new_session_id(now),
            start_time=now,
            config=cfg,
            status=SessionStatus.TRAINING if cfg.training else SessionStatus.ACTIVE,
        )
        with self._lock:
            self._sessions[session.id] = session

        logger.info(f"Created trading session {session.id} status={session.status.value}")
        return session

    def _get(self, session_id: str) -> TradingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def get_session(self, session_id: str) -> Optional[TradingSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_active_sessions(self) -> list[TradingSession]:
        """All sessions still held by the manager, whatever their status."""
        with self._lock:
            return list(self._sessions.values())

    def update_metrics(self, session_id: str, delta: Mapping[str, Any]) -> TradingSession:
        with self._lock:
            session = self._get(session_id)
            if session.status == SessionStatus.COMPLETED:
                raise InvalidSessionTransition(f"Session {session_id} is completed")
            session.metrics = session.metrics.merged(delta)
            session.last_updated = self._clock()

        logger.debug(f"Updated session metrics {session_id}: {session.metrics.to_dict()}")
        return session

    def pause(self, session_id: str) -> TradingSession:
        with self._lock:
            session = self._get(session_id)
            if not session.status.is_running:
                raise InvalidSessionTransition(
                    f"Cannot pause session {session_id} in status {session.status.value}"
                )
            session.resume_status = session.status
            session.status = SessionStatus.PAUSED
            session.last_updated = self._clock()

        logger.info(f"Paused session {session_id}")
        return session

    def resume(self, session_id: str) -> TradingSession:
        with self._lock:
            session = self._get(session_id)
            if session.status != SessionStatus.PAUSED:
                raise InvalidSessionTransition(
                    f"Cannot resume session {session_id} in status {session.status.value}"
                )
            session.status = session.resume_status or SessionStatus.ACTIVE
            session.resume_status = None
            session.last_updated = self._clock()

        logger.info(f"Resumed session {session_id} as {session.status.value}")
        return session

    def end(self, session_id: str) -> TradingSession:
        with self._lock:
            session = self._get(session_id)
            if session.status == SessionStatus.COMPLETED:
                raise InvalidSessionTransition(f"Session {session_id} already completed")
            now = self._clock()
            session.status = SessionStatus.COMPLETED
            session.end_time = now
            session.last_updated = now
            session.resume_status = None

        logger.info(f"Ended session {session_id}")
        return session

    def cleanup_old_sessions(self, max_age_ms: int = DEFAULT_MAX_SESSION_AGE_MS) -> int:
        """Drop paused/completed sessions that started more than ``max_age_ms`` ago."""
        cutoff = self._clock() - max_age_ms
        with self._lock:
            stale = [
                sid
                for sid, s in self._sessions.items()
                if s.start_time < cutoff and not s.status.is_running
            ]
            for sid in stale:
                del self._sessions[sid]

        logger.info(f"Cleaned up {len(stale)} old sessions")
        return len(stale)

    def get_session_summary(self, session_id: str) -> dict:
        with self._lock:
            session = self._get(session_id)
            end = session.end_time if session.end_time is not None else self._clock()
            m = session.metrics
            return {
                "session_id": session.id,
                "status": session.status.value,
                "duration_ms": end - session.start_time,
                "performance": {
                    "total_trades": m.total_trades,
                    "total_profit": m.total_profit,
                    "average_reward": m.average_reward,
                    "success_rate": m.success_rate,
                    "best_reward": m.best_reward,
                },
                "config": session.config.to_dict(),
                "last_updated": session.last_updated,
            }
