"""Runtime check of the third-party stack.

``health-check`` reports every requirement with its installed distribution
version; ``simulate`` refuses to start when one does not import.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from importlib import metadata

from core.exceptions import DependencyError


@dataclass(frozen=True)
class Requirement:
    module: str
    distribution: str
    purpose: str = ""


@dataclass(frozen=True)
class DependencyStatus:
    name: str
    ok: bool
    details: str | None = None
    version: str | None = None


REQUIRED_BASE: tuple[Requirement, ...] = (
    Requirement("yaml", "PyYAML", "config files"),
    Requirement("numpy", "numpy", "feature vectors, policy maths"),
    Requirement("pandas", "pandas", "indicators, model statistics"),
    Requirement("requests", "requests", "remote prediction backend"),
)


def _as_requirement(item: Requirement | str) -> Requirement:
    if isinstance(item, Requirement):
        return item
    return Requirement(module=item, distribution=item)


def _installed_version(distribution: str) -> str | None:
    try:
        return metadata.version(distribution)
    except metadata.PackageNotFoundError:
        return None


def check_dependencies(
    requirements: tuple[Requirement | str, ...] = REQUIRED_BASE,
) -> list[DependencyStatus]:
    """Import each requirement; plain strings are module names."""
    statuses: list[DependencyStatus] = []
    for req in map(_as_requirement, requirements):
        try:
            importlib.import_module(req.module)
        except Exception as e:  # noqa: BLE001
            statuses.append(DependencyStatus(name=req.module, ok=False, details=f"{req.distribution}: {e}"))
            continue

        version = _installed_version(req.distribution)
        label = f"{req.distribution} {version}" if version else req.distribution
        details = f"{label} ({req.purpose})" if req.purpose else label
        statuses.append(DependencyStatus(name=req.module, ok=True, details=details, version=version))
    return statuses


def require_dependencies(requirements: tuple[Requirement | str, ...] = REQUIRED_BASE) -> None:
    missing = [s for s in check_dependencies(requirements) if not s.ok]
    if missing:
        names = ", ".join(f"{m.name} ({m.details})" for m in missing)
        raise DependencyError(f"Missing dependencies: {names}; install with pip install ge-ai-trader")
