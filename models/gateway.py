from __future__ import annotations

import logging
from typing import Optional, Sequence

from features.market_state import MarketState
from models.backends import Prediction, PredictionBackend, StaticHoldBackend


logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.7


class PredictionGateway:
    """Ordered fallback chain of prediction backends.

    Each backend is tried in turn until one answers; a ``StaticHoldBackend`` is
    always appended last so ``predict`` never fails.
    """

    def __init__(self, backends: Sequence[PredictionBackend]):
        chain = list(backends)
        if not chain or not isinstance(chain[-1], StaticHoldBackend):
            chain.append(StaticHoldBackend())
        self.backends = chain
        self.last_source: Optional[str] = None

    def predict(self, state: MarketState) -> Prediction:
        for backend in self.backends:
            try:
                prediction = backend.predict(state)
            except Exception as e:
                logger.warning(
                    f"Prediction backend {backend.name} failed for item {state.item_id}: {e}"
                )
                continue
            self.last_source = prediction.source_backend
            return prediction

        # only reachable if the static backend itself was replaced
        logger.error(f"All prediction backends failed for item {state.item_id}")
        fallback = StaticHoldBackend().predict(state)
        self.last_source = fallback.source_backend
        return fallback

    def get_backend(self, name: str) -> Optional[PredictionBackend]:
        for backend in self.backends:
            if backend.name == name:
                return backend
        return None


def is_executable(
    prediction: Prediction,
    training: bool,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    adjustment: float = 0.0,
) -> bool:
    """Whether a prediction should be acted upon.

    ``adjustment`` is the recalibration offset applied by the adaptive
    controller (negative values make the model's confidence count for less).
    """
    if training:
        return True
    return prediction.confidence + adjustment > threshold
