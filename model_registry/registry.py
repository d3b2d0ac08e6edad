"""Model metadata registry.

Tracks named model versions with a snapshot of trading performance and
policy stats, and manages their lifecycle (testing -> production -> archived).
At most one record is in production at any time: promoting a model archives
the current production record first.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

import pandas as pd

from core.exceptions import ModelNotFoundError, RegistryError
from model_registry.model_metadata import ModelMetadata, ModelStatus, is_semver
from storage.model_store import ModelMetadataStore
from trading.performance import PerformanceSnapshot


logger = logging.getLogger(__name__)

STARTING_CAPITAL_GP = 1_000_000


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def performance_metrics_from_snapshot(snapshot: PerformanceSnapshot) -> dict[str, float]:
    """Registry view of a performance snapshot; rates as fractions, roi on 1M GP."""
    return {
        "roi": snapshot.net_profit / STARTING_CAPITAL_GP,
        "accuracy": snapshot.success_rate / 100.0,
        "win_rate": snapshot.win_rate / 100.0,
        "total_profit": snapshot.total_profit,
        "net_profit": snapshot.net_profit,
        "average_profit": snapshot.average_profit,
        "max_drawdown": snapshot.max_drawdown,
        "sharpe_ratio": snapshot.sharpe_ratio,
        "total_trades": snapshot.total_trades,
        "profitable_trades": int(round(snapshot.win_rate * snapshot.total_trades / 100.0)),
        "average_trade_duration_ms": snapshot.average_duration_ms,
    }


class ModelMetadataRegistry:
    def __init__(
        self,
        store: ModelMetadataStore,
        *,
        performance_provider: Optional[Callable[[], PerformanceSnapshot]] = None,
        stats_provider: Optional[Callable[[], Mapping[str, Any]]] = None,
        clock: Optional[Callable[[], str]] = None,
    ):
        self.store = store
        self._performance_provider = performance_provider or PerformanceSnapshot
        self._stats_provider = stats_provider or dict
        self._clock = clock or _utc_now_iso
        self._lock = threading.Lock()

    def save_model_with_metadata(
        self,
        model_id: str,
        version: str,
        description: str = "",
        *,
        training_duration_ms: int = 0,
        training_episodes: int = 0,
    ) -> ModelMetadata:
        """Snapshot current performance and policy stats into a new ``testing`` record."""
        if not model_id:
            raise RegistryError("model_id is required")
        if not is_semver(version):
            raise RegistryError(f"Version must be MAJOR.MINOR.PATCH, got {version!r}")

        perf = performance_metrics_from_snapshot(self._performance_provider())
        stats = dict(self._stats_provider())
        now = self._clock()
        metadata = ModelMetadata(
            model_id=model_id,
            version=version,
            description=description,
            training_date=now,
            training_duration_ms=int(training_duration_ms),
            training_episodes=int(training_episodes),
            status=ModelStatus.TESTING,
            performance_metrics=perf,
            technical_metrics={
                "epsilon": stats.get("epsilon", 0.0),
                "average_reward": stats.get("average_reward", 0.0),
                "memory_size": stats.get("memory_size", 0),
                "total_steps": stats.get("total_steps", 0),
                "total_episodes": stats.get("total_episodes", 0),
            },
            usage_stats={
                "total_predictions": 0,
                "successful_predictions": 0,
                "failed_predictions": 0,
                "last_used_at": None,
            },
            created_at=now,
            updated_at=now,
            tags=("reinforcement_learning", "ge_trading"),
        )

        with self._lock:
            if self.store.get(model_id) is not None:
                raise RegistryError(f"Model already registered: {model_id}")
            self.store.save(metadata)

        logger.info(
            f"Saved model {model_id} v{version} (roi={perf['roi']:.4f}, "
            f"score={metadata.calculate_efficiency_score():.3f})"
        )
        return metadata

    def _require(self, model_id: str) -> ModelMetadata:
        metadata = self.store.get(model_id)
        if metadata is None:
            raise ModelNotFoundError(f"Model not found: {model_id}")
        return metadata

    def load_model_with_metadata(self, model_id: str) -> dict:
        with self._lock:
            metadata = self._require(model_id)
            now = self._clock()
            usage = dict(metadata.usage_stats)
            usage["total_predictions"] = int(usage.get("total_predictions") or 0) + 1
            usage["last_used_at"] = now
            metadata = replace(metadata, usage_stats=usage, updated_at=now)
            self.store.save(metadata)

        return {
            "model_id": model_id,
            "version": metadata.version,
            "metadata": metadata,
            "performance_score": metadata.calculate_efficiency_score(),
        }

    def get_production_model(self) -> Optional[dict]:
        production = self.store.get_production_model()
        if production is None:
            logger.warning("No production model found")
            return None
        return {
            "model_id": production.model_id,
            "version": production.version,
            "metadata": production,
            "summary": production.summary(),
        }

    def set_model_as_production(self, model_id: str) -> ModelMetadata:
        with self._lock:
            target = self._require(model_id)
            if target.status == ModelStatus.FAILED:
                raise RegistryError(f"Cannot promote failed model: {model_id}")

            now = self._clock()
            for current in self.store.list_all():
                if current.status == ModelStatus.PRODUCTION and current.model_id != model_id:
                    self.store.save(
                        replace(current, status=ModelStatus.ARCHIVED, archived_at=now, updated_at=now)
                    )
                    logger.info(f"Archived previous production model {current.model_id}")

            promoted = replace(target, status=ModelStatus.PRODUCTION, deployed_at=now, updated_at=now)
            self.store.save(promoted)

        logger.info(
            f"Model {model_id} v{promoted.version} set as production "
            f"(score={promoted.calculate_efficiency_score():.3f})"
        )
        return promoted

    def archive_model(self, model_id: str) -> ModelMetadata:
        with self._lock:
            target = self._require(model_id)
            now = self._clock()
            archived = replace(target, status=ModelStatus.ARCHIVED, archived_at=now, updated_at=now)
            self.store.save(archived)
        return archived

    def update_model_performance_metrics(self, model_id: str, metrics: Mapping[str, float]) -> dict:
        with self._lock:
            target = self._require(model_id)
            merged = {**target.performance_metrics, **dict(metrics)}
            updated = replace(target, performance_metrics=merged, updated_at=self._clock())
            self.store.save(updated)

        logger.info(f"Updated performance metrics of {model_id}: {sorted(metrics)}")
        return {
            "model_id": model_id,
            "version": updated.version,
            "performance_score": updated.calculate_efficiency_score(),
        }

    def get_model_performance_comparison(self, limit: int = 10) -> dict:
        """Rank the ``limit`` most recent models by efficiency score."""
        rows = [
            {
                "model_id": m.model_id,
                "version": m.version,
                "status": m.status.value,
                "performance_score": m.calculate_efficiency_score(),
                "roi": float(m.performance_metrics.get("roi") or 0),
                "win_rate": float(m.performance_metrics.get("win_rate") or 0),
                "total_profit": float(m.performance_metrics.get("total_profit") or 0),
                "total_trades": int(m.performance_metrics.get("total_trades") or 0),
                "created_at": m.created_at,
            }
            for m in self.store.get_recent_models(limit)
        ]
        rows.sort(key=lambda r: r["performance_score"], reverse=True)

        n = len(rows)
        return {
            "models": rows,
            "summary": {
                "total_models": n,
                "avg_performance_score": sum(r["performance_score"] for r in rows) / n if n else 0.0,
                "best_performing": rows[0] if rows else None,
                "avg_roi": sum(r["roi"] for r in rows) / n if n else 0.0,
            },
        }

    def get_models_by_performance(self, min_roi: float = 0.05) -> list[ModelMetadata]:
        return self.store.get_models_by_performance(min_roi)

    def get_recent_models(self, limit: int = 10) -> list[ModelMetadata]:
        return self.store.get_recent_models(limit)

    def get_model_statistics(self) -> dict[str, dict]:
        """Per-status counts and averages over every registered model."""
        models = self.store.list_all()
        if not models:
            return {}

        df = pd.DataFrame(
            [
                {
                    "status": m.status.value,
                    "roi": float(m.performance_metrics.get("roi") or 0),
                    "accuracy": float(m.performance_metrics.get("accuracy") or 0),
                    "total_profit": float(m.performance_metrics.get("total_profit") or 0),
                    "total_trades": int(m.performance_metrics.get("total_trades") or 0),
                }
                for m in models
            ]
        )
        grouped = df.groupby("status").agg(
            count=("roi", "size"),
            avg_roi=("roi", "mean"),
            avg_accuracy=("accuracy", "mean"),
            total_profit=("total_profit", "sum"),
            total_trades=("total_trades", "sum"),
        )
        return {
            str(status): {
                "count": int(row["count"]),
                "avg_roi": float(row["avg_roi"]),
                "avg_accuracy": float(row["avg_accuracy"]),
                "total_profit": float(row["total_profit"]),
                "total_trades": int(row["total_trades"]),
            }
            for status, row in grouped.iterrows()
        }
