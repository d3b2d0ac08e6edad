from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from core.exceptions import TradeError


class ActionType(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"

    @classmethod
    def parse(cls, value: Any) -> ActionType:
        if isinstance(value, ActionType):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise ValueError(f"Unknown action type: {value!r}")


@dataclass(frozen=True)
class TradeAction:
    type: ActionType
    item_id: Any
    quantity: int
    price: float
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "item_id": self.item_id,
            "quantity": self.quantity,
            "price": self.price,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TradeAction:
        return cls(
            type=ActionType.parse(data["type"]),
            item_id=data.get("item_id"),
            quantity=int(data.get("quantity", 0)),
            price=float(data.get("price", 0.0)),
            reason=str(data.get("reason", "")),
        )


@dataclass(frozen=True)
class DecisionOutcome:
    success: bool
    profit_loss: float
    final_price: float
    execution_time_ms: int
    reward: float
    trade_id: str

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "profit_loss": self.profit_loss,
            "final_price": self.final_price,
            "execution_time_ms": self.execution_time_ms,
            "reward": self.reward,
            "trade_id": self.trade_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DecisionOutcome:
        return cls(
            success=bool(data["success"]),
            profit_loss=float(data.get("profit_loss", 0.0)),
            final_price=float(data.get("final_price", 0.0)),
            execution_time_ms=int(data.get("execution_time_ms", 0)),
            reward=float(data.get("reward", 0.0)),
            trade_id=str(data.get("trade_id", "")),
        )


@dataclass
class Decision:
    """One trading decision per processed item per cycle.

    The outcome is attached once after the simulated trade settles; the
    decision is read-only from then on.
    """
    session_id: str
    item_id: Any
    action: TradeAction
    confidence: float
    source_backend: str
    reasoning: str
    timestamp: int
    decision_id: Optional[str] = None
    outcome: Optional[DecisionOutcome] = None
    market_state: Optional[dict] = field(default=None, repr=False)

    def attach_outcome(self, outcome: DecisionOutcome) -> None:
        if self.outcome is not None:
            raise TradeError(f"Outcome already attached to decision {self.decision_id}")
        self.outcome = outcome

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "session_id": self.session_id,
            "item_id": self.item_id,
            "action": self.action.to_dict(),
            "confidence": self.confidence,
            "source_backend": self.source_backend,
            "reasoning": self.reasoning,
            "timestamp": self.timestamp,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "market_state": self.market_state,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Decision:
        outcome = data.get("outcome")
        return cls(
            session_id=data["session_id"],
            item_id=data.get("item_id"),
            action=TradeAction.from_dict(data["action"]),
            confidence=float(data["confidence"]),
            source_backend=str(data.get("source_backend", "")),
            reasoning=str(data.get("reasoning", "")),
            timestamp=int(data["timestamp"]),
            decision_id=data.get("decision_id"),
            outcome=DecisionOutcome.from_dict(outcome) if outcome else None,
            market_state=data.get("market_state"),
        )
