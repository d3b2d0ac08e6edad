from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from core.config import load_config
from core.dependencies import check_dependencies, require_dependencies
from core.exceptions import GEAITraderError
from core.logger import setup_logger
from interfaces.cli.output import (
    CommandResult,
    render_dependency_table,
    render_json,
    render_models_table,
    render_simulation_table,
)
from model_registry.registry import ModelMetadataRegistry
from storage.model_store import JsonModelMetadataStore
from trading.opportunities import find_trading_opportunities
from trading.orchestrator import TradingOrchestrator


def _read_json(path: str | Path, what: str) -> Any:
    p = Path(path)
    if not p.exists():
        raise GEAITraderError(f"{what} file not found: {p}")
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except ValueError as e:
        raise GEAITraderError(f"Invalid JSON in {what} file {p}: {e}") from e


def health_check(config_path: str | Path) -> CommandResult:
    cfg = load_config(config_path)
    logger = setup_logger(cfg.app)
    logger.info(f"Loaded config: env={cfg.app.env} log_level={cfg.app.log_level}")

    statuses = check_dependencies()
    table = render_dependency_table(statuses)
    ok = all(s.ok for s in statuses)
    exit_code = 0 if ok else 2

    if ok:
        logger.info("Dependency check: OK")
    else:
        logger.error("Dependency check: FAILED")

    return CommandResult(exit_code=exit_code, output=table)


def simulate_command(
    config_path: str | Path,
    *,
    items_path: str | Path,
    cycles: int,
    wait: bool,
    in_memory: bool,
    model_id: str | None,
    model_version: str,
    output: str,
) -> CommandResult:
    """Run a learning session over a fixed feed snapshot and report its summary."""
    cfg = load_config(config_path)
    logger = setup_logger(cfg.app)
    require_dependencies()

    items = _read_json(items_path, "items")
    if isinstance(items, dict):
        items = list(items.values())
    if not isinstance(items, list):
        return CommandResult(exit_code=2, output="ERROR: items file must hold a JSON list or mapping")
    if cycles <= 0:
        return CommandResult(exit_code=2, output="ERROR: cycles must be positive")

    orchestrator = TradingOrchestrator.from_config(cfg, in_memory=in_memory)
    try:
        session_id = orchestrator.start_learning_session()
        actions = 0
        for _ in range(cycles):
            actions += len(orchestrator.process_market_data(items))
            if wait:
                orchestrator.wait_for_settlements()

        summary = orchestrator.finish_learning_session() or {}
        summary["actions"] = actions

        if model_id:
            metadata = orchestrator.save_model_with_metadata(model_id, model_version, f"Simulation {session_id}")
            summary["model"] = metadata.summary()
    finally:
        orchestrator.shutdown()

    logger.info(f"simulate: session={session_id} actions={actions}")
    out = render_json(summary) if output == "json" else render_simulation_table(summary)
    return CommandResult(exit_code=0, output=out)


def opportunities_command(
    config_path: str | Path,
    *,
    prices_path: str | Path,
    limit: int,
    output: str,
) -> CommandResult:
    cfg = load_config(config_path)
    setup_logger(cfg.app)

    prices = _read_json(prices_path, "prices")
    if not isinstance(prices, dict):
        return CommandResult(exit_code=2, output="ERROR: prices file must hold a JSON mapping of item id to price data")

    res = find_trading_opportunities(
        prices,
        max_item_value=cfg.trading.max_item_value,
        min_profit_margin=cfg.trading.min_profit_margin,
        limit=limit,
    )
    if output == "json":
        return CommandResult(exit_code=0, output=render_json(res))

    lines = ["ITEM\tBUY\tSELL\tMARGIN\tRISK"]
    for o in res["opportunities"]:
        lines.append(
            f"{o['item_id']}\t{o['buy_price']:.0f}\t{o['sell_price']:.0f}\t"
            f"{o['profit_margin']:.4f}\t{o['risk_score']:.2f}"
        )
    return CommandResult(exit_code=0, output="\n".join(lines))


def models_command(
    config_path: str | Path,
    *,
    promote: str | None,
    limit: int,
    output: str,
) -> CommandResult:
    cfg = load_config(config_path)
    logger = setup_logger(cfg.app)

    registry = ModelMetadataRegistry(JsonModelMetadataStore(cfg.storage.model_registry_dir))
    if promote:
        promoted = registry.set_model_as_production(promote)
        logger.info(f"models: promoted {promoted.model_id} v{promoted.version}")

    comparison = registry.get_model_performance_comparison(limit)
    if output == "json":
        payload = {**comparison, "statistics": registry.get_model_statistics()}
        return CommandResult(exit_code=0, output=render_json(payload))
    return CommandResult(exit_code=0, output=render_models_table(comparison))
