"""Adaptive learning - rule-based retuning of the live trading configuration.

Learning Loop:
--------------
1. Trade settles → completed-trade count grows
2. Every ``learning_frequency`` trades (at most once a minute) a pass runs
   on a background worker
3. Pass reads recent decisions → aggregates performance → derives actions
4. Actions retune exploration, profit margin, item value cap, per-action
   frequency and confidence calibration
5. The pass is persisted as a learning-session record

A pass never propagates errors into the decision loop.
"""

from __future__ import annotations

from adaptive.adaptive_controller import (
    AdaptiveAction,
    AdaptiveActionType,
    AdaptiveConfig,
    AdaptiveLearningController,
    PerformanceAnalysis,
    analyze_decisions,
    derive_adaptive_actions,
)

__all__ = [
    "AdaptiveAction",
    "AdaptiveActionType",
    "AdaptiveConfig",
    "AdaptiveLearningController",
    "PerformanceAnalysis",
    "analyze_decisions",
    "derive_adaptive_actions",
]
