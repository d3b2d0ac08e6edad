"""Model metadata persistence.

``InMemoryModelMetadataStore`` for tests and one-shot runs,
``JsonModelMetadataStore`` for a directory of ``{model_id}.json`` records plus a
``version_history.jsonl`` audit trail.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Protocol

from core.exceptions import StorageError
from model_registry.model_metadata import ModelMetadata, ModelStatus


logger = logging.getLogger(__name__)

_RANKABLE = (ModelStatus.TESTING, ModelStatus.PRODUCTION)


class ModelMetadataStore(Protocol):
    def save(self, metadata: ModelMetadata) -> None:
        ...

    def get(self, model_id: str) -> Optional[ModelMetadata]:
        ...

    def list_all(self) -> list[ModelMetadata]:
        ...

    def get_production_model(self) -> Optional[ModelMetadata]:
        ...

    def get_recent_models(self, limit: int = 10) -> list[ModelMetadata]:
        ...

    def get_models_by_performance(self, min_roi: float = 0.05) -> list[ModelMetadata]:
        ...


def _production(models: Iterable[ModelMetadata]) -> Optional[ModelMetadata]:
    prod = [m for m in models if m.status == ModelStatus.PRODUCTION]
    if not prod:
        return None
    return max(prod, key=lambda m: m.deployed_at or "")


def _recent(models: list[ModelMetadata], limit: int) -> list[ModelMetadata]:
    return sorted(models, key=lambda m: m.created_at, reverse=True)[:limit]


def _by_performance(models: Iterable[ModelMetadata], min_roi: float) -> list[ModelMetadata]:
    selected = [
        m
        for m in models
        if m.status in _RANKABLE and float(m.performance_metrics.get("roi") or 0) >= min_roi
    ]
    return sorted(selected, key=lambda m: float(m.performance_metrics.get("roi") or 0), reverse=True)


class InMemoryModelMetadataStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._models: dict[str, ModelMetadata] = {}

    def save(self, metadata: ModelMetadata) -> None:
        with self._lock:
            self._models[metadata.model_id] = metadata

    def get(self, model_id: str) -> Optional[ModelMetadata]:
        with self._lock:
            return self._models.get(model_id)

    def list_all(self) -> list[ModelMetadata]:
        with self._lock:
            return list(self._models.values())

    def get_production_model(self) -> Optional[ModelMetadata]:
        return _production(self.list_all())

    def get_recent_models(self, limit: int = 10) -> list[ModelMetadata]:
        return _recent(self.list_all(), limit)

    def get_models_by_performance(self, min_roi: float = 0.05) -> list[ModelMetadata]:
        return _by_performance(self.list_all(), min_roi)


class JsonModelMetadataStore:
    """One JSON file per model id; every save is also appended to the history log."""

    def __init__(self, registry_dir: Path | str):
        self.registry_dir = Path(registry_dir)
        self.registry_dir.mkdir(parents=True, exist_ok=True)
        self.history_path = self.registry_dir / "version_history.jsonl"
        self._lock = threading.Lock()

    def _path(self, model_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in model_id)
        return self.registry_dir / f"{safe}.json"

    def save(self, metadata: ModelMetadata) -> None:
        payload = metadata.to_dict()
        history_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": "save",
            "model_id": metadata.model_id,
            "status": metadata.status.value,
            "version": metadata.version,
        }
        try:
            with self._lock:
                self._path(metadata.model_id).write_text(json.dumps(payload, indent=2))
                with open(self.history_path, "a") as f:
                    f.write(json.dumps(history_entry) + "\n")
        except OSError as e:
            raise StorageError(f"Failed to save model metadata {metadata.model_id}: {e}") from e

    def get(self, model_id: str) -> Optional[ModelMetadata]:
        path = self._path(model_id)
        if not path.exists():
            return None
        try:
            return ModelMetadata.from_dict(json.loads(path.read_text()))
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Failed to load model metadata {model_id}: {e}") from e

    def list_all(self) -> list[ModelMetadata]:
        models = []
        for path in sorted(self.registry_dir.glob("*.json")):
            try:
                models.append(ModelMetadata.from_dict(json.loads(path.read_text())))
            except Exception as e:
                logger.error(f"Failed to load model metadata from {path}: {e}")
        return models

    def get_production_model(self) -> Optional[ModelMetadata]:
        return _production(self.list_all())

    def get_recent_models(self, limit: int = 10) -> list[ModelMetadata]:
        return _recent(self.list_all(), limit)

    def get_models_by_performance(self, min_roi: float = 0.05) -> list[ModelMetadata]:
        return _by_performance(self.list_all(), min_roi)

    def get_version_history(self, limit: int = 100) -> list[dict]:
        """History entries, most recent first."""
        if not self.history_path.exists():
            return []

        history = []
        with open(self.history_path, "r") as f:
            for line in f:
                try:
                    history.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

        return list(reversed(history[-limit:]))
