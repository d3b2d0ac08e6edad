# interfaces/cli/output.py

from dataclasses import dataclass
from typing import Any
import json
import math

from core.dependencies import DependencyStatus


@dataclass
class CommandResult:
    exit_code: int
    output: str


def _finite_or_none(value: Any) -> Any:
    # JSON has no Infinity/NaN
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _finite_or_none(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_finite_or_none(v) for v in value]
    return value


def render_json(data: Any) -> str:
    return json.dumps(_finite_or_none(data), indent=2, default=str, allow_nan=False)


def render_dependency_table(statuses: list[DependencyStatus]) -> str:
    lines: list[str] = []
    lines.append("NAME\tSTATUS\tDETAILS")
    for s in statuses:
        status = "OK" if s.ok else "MISSING"
        details = s.details or ""
        lines.append(f"{s.name}\t{status}\t{details}")
    return "\n".join(lines)


def render_simulation_table(summary: dict) -> str:
    perf = summary.get("performance") or {}
    lines = [
        f"session\t{summary.get('session_id')}",
        f"status\t{summary.get('status')}",
        f"duration_ms\t{summary.get('duration_ms')}",
        f"trades\t{perf.get('total_trades', 0)}",
        f"success_rate\t{perf.get('success_rate', 0.0):.3f}",
        f"total_profit\t{perf.get('total_profit', 0.0):.0f}",
        f"average_reward\t{perf.get('average_reward', 0.0):.3f}",
    ]
    return "\n".join(lines)


def render_models_table(comparison: dict) -> str:
    lines = ["MODEL\tVERSION\tSTATUS\tSCORE\tROI"]
    for m in comparison.get("models", []):
        lines.append(
            f"{m['model_id']}\t{m['version']}\t{m['status']}\t"
            f"{m['performance_score']:.3f}\t{m['roi']:.4f}"
        )
    return "\n".join(lines)
