from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from core.exceptions import ConfigError


@dataclass(frozen=True)
class AppConfig:
    env: str
    log_level: str
    log_dir: Path
    log_file: str
    json_log_file: str
    console_log_format: str
    enable_json_file_log: bool


@dataclass(frozen=True)
class TradingSettings:
    min_profit_margin: float = 0.05
    max_item_value: float = 2_000_000_000
    min_item_value: float = 1_000_000_000
    confidence_threshold: float = 0.7
    focus_on_high_volume: bool = True


@dataclass(frozen=True)
class LearningSettings:
    enable_online_learning: bool = True
    learning_frequency: int = 10
    min_interval_s: float = 60.0
    lookback_hours: float = 24.0
    decision_limit: int = 1000
    performance_threshold: float = 0.6


@dataclass(frozen=True)
class PredictionSettings:
    remote_url: str | None = None
    timeout_s: float = 5.0
    failure_threshold: int = 5
    cooldown_s: float = 60.0
    epsilon: float = 0.1
    seed: int | None = None


@dataclass(frozen=True)
class SimulationSettings:
    min_settle_delay_s: float = 5.0
    max_settle_delay_s: float = 35.0
    seed: int | None = None


@dataclass(frozen=True)
class StorageSettings:
    decisions_db: Path = Path("ai_data") / "decisions.db"
    learning_sessions_log: Path = Path("ai_data") / "learning_sessions.jsonl"
    model_registry_dir: Path = Path("ai_data") / "model_registry"


@dataclass(frozen=True)
class TraderConfig:
    app: AppConfig
    trading: TradingSettings = field(default_factory=TradingSettings)
    learning: LearningSettings = field(default_factory=LearningSettings)
    prediction: PredictionSettings = field(default_factory=PredictionSettings)
    simulation: SimulationSettings = field(default_factory=SimulationSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)


def _require_str(obj: dict[str, Any], key: str) -> str:
    val = obj.get(key)
    if not isinstance(val, str) or not val.strip():
        raise ConfigError(f"Invalid or missing config value: {key}")
    return val


def _get_str(obj: dict[str, Any], key: str, default: str) -> str:
    val = obj.get(key, default)
    if val is None:
        return default
    if not isinstance(val, str):
        raise ConfigError(f"Invalid config value (expected string): {key}")
    return val


def _get_optional_str(obj: dict[str, Any], key: str) -> str | None:
    val = obj.get(key)
    if val is None:
        return None
    if not isinstance(val, str):
        raise ConfigError(f"Invalid config value (expected string): {key}")
    return val


def _get_bool(obj: dict[str, Any], key: str, default: bool) -> bool:
    val = obj.get(key, default)
    if isinstance(val, bool):
        return val
    if val is None:
        return default
    raise ConfigError(f"Invalid config value (expected bool): {key}")


def _get_float(obj: dict[str, Any], key: str, default: float) -> float:
    val = obj.get(key, default)
    if val is None:
        return default
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise ConfigError(f"Invalid config value (expected number): {key}")
    return float(val)


def _get_int(obj: dict[str, Any], key: str, default: int) -> int:
    val = obj.get(key, default)
    if val is None:
        return default
    if isinstance(val, bool) or not isinstance(val, int):
        raise ConfigError(f"Invalid config value (expected int): {key}")
    return val


def _get_optional_int(obj: dict[str, Any], key: str) -> int | None:
    val = obj.get(key)
    if val is None:
        return None
    if isinstance(val, bool) or not isinstance(val, int):
        raise ConfigError(f"Invalid config value (expected int): {key}")
    return val


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    val = raw.get(name)
    if val is None:
        return {}
    if not isinstance(val, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return val


def _parse_app(app: dict[str, Any]) -> AppConfig:
    env = _require_str(app, "env")
    log_level = _require_str(app, "log_level")

    log_dir_raw = _require_str(app, "log_dir")
    log_dir = Path(log_dir_raw).expanduser()

    log_file = _require_str(app, "log_file")

    json_log_file = _get_str(app, "json_log_file", default="app.json.log")
    console_log_format = _get_str(app, "console_log_format", default="text")
    enable_json_file_log = _get_bool(app, "enable_json_file_log", default=True)

    return AppConfig(
        env=env,
        log_level=log_level,
        log_dir=log_dir,
        log_file=log_file,
        json_log_file=json_log_file,
        console_log_format=console_log_format,
        enable_json_file_log=enable_json_file_log,
    )


def _parse_trading(sec: dict[str, Any]) -> TradingSettings:
    d = TradingSettings()
    return TradingSettings(
        min_profit_margin=_get_float(sec, "min_profit_margin", d.min_profit_margin),
        max_item_value=_get_float(sec, "max_item_value", d.max_item_value),
        min_item_value=_get_float(sec, "min_item_value", d.min_item_value),
        confidence_threshold=_get_float(sec, "confidence_threshold", d.confidence_threshold),
        focus_on_high_volume=_get_bool(sec, "focus_on_high_volume", d.focus_on_high_volume),
    )


def _parse_learning(sec: dict[str, Any]) -> LearningSettings:
    d = LearningSettings()
    learning_frequency = _get_int(sec, "learning_frequency", d.learning_frequency)
    if learning_frequency <= 0:
        raise ConfigError("learning.learning_frequency must be positive")
    return LearningSettings(
        enable_online_learning=_get_bool(sec, "enable_online_learning", d.enable_online_learning),
        learning_frequency=learning_frequency,
        min_interval_s=_get_float(sec, "min_interval_s", d.min_interval_s),
        lookback_hours=_get_float(sec, "lookback_hours", d.lookback_hours),
        decision_limit=_get_int(sec, "decision_limit", d.decision_limit),
        performance_threshold=_get_float(sec, "performance_threshold", d.performance_threshold),
    )


def _parse_prediction(sec: dict[str, Any]) -> PredictionSettings:
    d = PredictionSettings()
    return PredictionSettings(
        remote_url=_get_optional_str(sec, "remote_url"),
        timeout_s=_get_float(sec, "timeout_s", d.timeout_s),
        failure_threshold=_get_int(sec, "failure_threshold", d.failure_threshold),
        cooldown_s=_get_float(sec, "cooldown_s", d.cooldown_s),
        epsilon=_get_float(sec, "epsilon", d.epsilon),
        seed=_get_optional_int(sec, "seed"),
    )


def _parse_simulation(sec: dict[str, Any]) -> SimulationSettings:
    d = SimulationSettings()
    lo = _get_float(sec, "min_settle_delay_s", d.min_settle_delay_s)
    hi = _get_float(sec, "max_settle_delay_s", d.max_settle_delay_s)
    if lo < 0 or hi < lo:
        raise ConfigError("simulation settle delays must satisfy 0 <= min <= max")
    return SimulationSettings(
        min_settle_delay_s=lo,
        max_settle_delay_s=hi,
        seed=_get_optional_int(sec, "seed"),
    )


def _parse_storage(sec: dict[str, Any]) -> StorageSettings:
    d = StorageSettings()
    return StorageSettings(
        decisions_db=Path(_get_str(sec, "decisions_db", str(d.decisions_db))).expanduser(),
        learning_sessions_log=Path(
            _get_str(sec, "learning_sessions_log", str(d.learning_sessions_log))
        ).expanduser(),
        model_registry_dir=Path(
            _get_str(sec, "model_registry_dir", str(d.model_registry_dir))
        ).expanduser(),
    )


def load_config(config_path: str | Path) -> TraderConfig:
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        import yaml  # type: ignore
    except ModuleNotFoundError as e:
        raise ConfigError(
            "PyYAML is not installed. Install it (e.g. `pip install PyYAML`) to use YAML config."
        ) from e

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except Exception as e:  # noqa: BLE001
        raise ConfigError(f"Failed to parse YAML config: {path}") from e

    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a YAML mapping")

    app = raw.get("app")
    if not isinstance(app, dict):
        raise ConfigError("Missing 'app' section in config")

    return TraderConfig(
        app=_parse_app(app),
        trading=_parse_trading(_section(raw, "trading")),
        learning=_parse_learning(_section(raw, "learning")),
        prediction=_parse_prediction(_section(raw, "prediction")),
        simulation=_parse_simulation(_section(raw, "simulation")),
        storage=_parse_storage(_section(raw, "storage")),
    )
