"""Learning session records written by the adaptive controller."""

from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from core.exceptions import StorageError


logger = logging.getLogger(__name__)


class LearningSessionStore(Protocol):
    def save_learning_session(self, record: Mapping[str, Any]) -> None:
        ...


class InMemoryLearningSessionStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[dict] = []

    def save_learning_session(self, record: Mapping[str, Any]) -> None:
        with self._lock:
            self._records.append(copy.deepcopy(dict(record)))

    def get_learning_sessions(self, session_id: Optional[str] = None) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._records
                if session_id is None or r.get("session_id") == session_id
            ]


class JsonlLearningSessionStore:
    """Append-only JSONL log, one record per line."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def save_learning_session(self, record: Mapping[str, Any]) -> None:
        line = json.dumps(dict(record), default=str)
        try:
            with self._lock, open(self.path, "a") as f:
                f.write(line + "\n")
        except OSError as e:
            raise StorageError(f"Failed to write learning session to {self.path}: {e}") from e

    def get_learning_sessions(self, session_id: Optional[str] = None, limit: int = 100) -> list[dict]:
        """Most recent records first."""
        if not self.path.exists():
            return []

        records = []
        with open(self.path, "r") as f:
            for line in f:
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed learning session line in {self.path}")
                    continue
                if session_id is None or record.get("session_id") == session_id:
                    records.append(record)

        return list(reversed(records[-limit:]))
