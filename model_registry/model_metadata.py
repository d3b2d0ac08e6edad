from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+$")


class ModelStatus(Enum):
    TRAINING = "training"
    TESTING = "testing"
    PRODUCTION = "production"
    ARCHIVED = "archived"
    FAILED = "failed"


def is_semver(version: str) -> bool:
    return bool(SEMVER_RE.match(version or ""))


@dataclass(frozen=True)
class ModelMetadata:
    """Registry record for one model version."""
    model_id: str
    version: str
    description: str
    training_date: str
    status: ModelStatus
    performance_metrics: dict[str, float]
    technical_metrics: dict[str, Any]
    created_at: str
    updated_at: str
    training_duration_ms: int = 0
    training_episodes: int = 0
    usage_stats: dict[str, Any] = field(default_factory=dict)
    deployed_at: Optional[str] = None
    archived_at: Optional[str] = None
    tags: tuple[str, ...] = ()

    def calculate_efficiency_score(self) -> float:
        """0.3 roi + 0.25 accuracy + 0.25 win rate + 0.2 average reward, clamped to [0, 1]."""
        perf = self.performance_metrics
        score = (
            0.3 * float(perf.get("roi") or 0)
            + 0.25 * float(perf.get("accuracy") or 0)
            + 0.25 * float(perf.get("win_rate") or 0)
            + 0.2 * float(self.technical_metrics.get("average_reward") or 0)
        )
        return max(0.0, min(1.0, score))

    def summary(self) -> dict:
        return {
            "model_id": self.model_id,
            "version": self.version,
            "status": self.status.value,
            "efficiency_score": self.calculate_efficiency_score(),
            "total_profit": self.performance_metrics.get("total_profit", 0.0),
            "win_rate": self.performance_metrics.get("win_rate", 0.0),
            "total_trades": self.performance_metrics.get("total_trades", 0),
            "created_at": self.created_at,
            "last_used_at": self.usage_stats.get("last_used_at"),
        }

    def to_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "version": self.version,
            "description": self.description,
            "training_date": self.training_date,
            "training_duration_ms": self.training_duration_ms,
            "training_episodes": self.training_episodes,
            "status": self.status.value,
            "performance_metrics": dict(self.performance_metrics),
            "technical_metrics": dict(self.technical_metrics),
            "usage_stats": dict(self.usage_stats),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deployed_at": self.deployed_at,
            "archived_at": self.archived_at,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ModelMetadata:
        return cls(
            model_id=data["model_id"],
            version=data["version"],
            description=data.get("description", ""),
            training_date=data["training_date"],
            training_duration_ms=int(data.get("training_duration_ms", 0)),
            training_episodes=int(data.get("training_episodes", 0)),
            status=ModelStatus(data["status"]),
            performance_metrics=dict(data.get("performance_metrics") or {}),
            technical_metrics=dict(data.get("technical_metrics") or {}),
            usage_stats=dict(data.get("usage_stats") or {}),
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
            deployed_at=data.get("deployed_at"),
            archived_at=data.get("archived_at"),
            tags=tuple(data.get("tags") or ()),
        )
