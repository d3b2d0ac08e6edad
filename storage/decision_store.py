"""Decision audit store.

Every decision the gateway produces is saved here; the outcome is attached once
the simulated trade settles. The adaptive controller reads recent decisions
back to judge performance.
"""

from __future__ import annotations

import copy
import itertools
import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from core.exceptions import RecordNotFoundError, StorageError
from trading.trade_model import Decision, DecisionOutcome


class DecisionAuditStore(Protocol):
    def save_decision(self, decision: Decision) -> str:
        ...

    def update_decision_outcome(self, decision_id: str, outcome: DecisionOutcome) -> None:
        ...

    def get_decisions(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        sort: str = "desc",
        limit: Optional[int] = None,
    ) -> list[Decision]:
        ...


def _matches(decision: Decision, filter: Mapping[str, Any]) -> bool:
    session_id = filter.get("session_id")
    if session_id is not None and decision.session_id != session_id:
        return False
    start_time = filter.get("start_time")
    if start_time is not None and decision.timestamp < start_time:
        return False
    return True


class InMemoryDecisionStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._decisions: dict[str, Decision] = {}
        self._ids = itertools.count(1)

    def save_decision(self, decision: Decision) -> str:
        with self._lock:
            decision_id = decision.decision_id or f"decision_{next(self._ids)}"
            stored = copy.deepcopy(decision)
            stored.decision_id = decision_id
            self._decisions[decision_id] = stored
        return decision_id

    def update_decision_outcome(self, decision_id: str, outcome: DecisionOutcome) -> None:
        with self._lock:
            decision = self._decisions.get(decision_id)
            if decision is None:
                raise RecordNotFoundError(f"Decision {decision_id} not found")
            decision.attach_outcome(outcome)

    def get_decisions(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        sort: str = "desc",
        limit: Optional[int] = None,
    ) -> list[Decision]:
        with self._lock:
            rows = [d for d in self._decisions.values() if _matches(d, filter or {})]
            rows = [copy.deepcopy(d) for d in rows]
        rows.sort(key=lambda d: d.timestamp, reverse=(sort == "desc"))
        return rows[:limit] if limit is not None else rows


class SqliteDecisionStore:
    """SQLite-backed decision audit log (one connection per call)."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.init_db()

    def get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.db_path)

    def init_db(self) -> None:
        conn = self.get_conn()
        cur = conn.cursor()

        cur.execute("""
        CREATE TABLE IF NOT EXISTS decisions (
            decision_id TEXT PRIMARY KEY,
            session_id TEXT,
            item_id TEXT,
            action_type TEXT,
            confidence REAL,
            source_backend TEXT,
            timestamp INTEGER,
            payload TEXT,
            outcome TEXT
        )
        """)
        cur.execute("""
        CREATE INDEX IF NOT EXISTS idx_decisions_session_ts
        ON decisions (session_id, timestamp)
        """)

        conn.commit()
        conn.close()

    def save_decision(self, decision: Decision) -> str:
        decision_id = decision.decision_id or uuid.uuid4().hex
        data = decision.to_dict()
        data["decision_id"] = decision_id
        outcome = data.pop("outcome")

        conn = self.get_conn()
        try:
            conn.execute("""
            INSERT OR REPLACE INTO decisions VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                decision_id,
                decision.session_id,
                str(decision.item_id),
                decision.action.type.value,
                decision.confidence,
                decision.source_backend,
                decision.timestamp,
                json.dumps(data),
                json.dumps(outcome) if outcome else None,
            ))
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save decision {decision_id}: {e}") from e
        finally:
            conn.close()
        return decision_id

    def update_decision_outcome(self, decision_id: str, outcome: DecisionOutcome) -> None:
        conn = self.get_conn()
        try:
            cur = conn.execute("""
            UPDATE decisions SET outcome=?
            WHERE decision_id=? AND outcome IS NULL
            """, (json.dumps(outcome.to_dict()), decision_id))
            conn.commit()
            if cur.rowcount == 0:
                raise RecordNotFoundError(
                    f"Decision {decision_id} not found or outcome already attached"
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to update decision {decision_id}: {e}") from e
        finally:
            conn.close()

    def get_decisions(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        sort: str = "desc",
        limit: Optional[int] = None,
    ) -> list[Decision]:
        filter = filter or {}
        clauses: list[str] = []
        params: list[Any] = []
        if filter.get("session_id") is not None:
            clauses.append("session_id = ?")
            params.append(filter["session_id"])
        if filter.get("start_time") is not None:
            clauses.append("timestamp >= ?")
            params.append(int(filter["start_time"]))

        sql = "SELECT payload, outcome FROM decisions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp " + ("DESC" if sort == "desc" else "ASC")
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        conn = self.get_conn()
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to query decisions: {e}") from e
        finally:
            conn.close()

        decisions = []
        for payload, outcome in rows:
            data = json.loads(payload)
            data["outcome"] = json.loads(outcome) if outcome else None
            decisions.append(Decision.from_dict(data))
        return decisions
