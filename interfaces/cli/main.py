from __future__ import annotations

import argparse
import sys
from pathlib import Path

from core.exceptions import GEAITraderError
from interfaces.cli.commands import (
    health_check,
    models_command,
    opportunities_command,
    simulate_command,
)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ge_ai_trader")
    p.add_argument(
        "--config",
        default=str(Path("config") / "config.yaml"),
        help="Path to config.yaml",
    )

    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("health-check", help="Run dependency checks and config load")
    sub.add_parser("doctor", help="Alias for health-check")

    sim = sub.add_parser("simulate", help="Run a simulated learning session over a feed snapshot")
    sim.add_argument("--items", dest="items_path", required=True, help="JSON list of feed items, e.g. config/sample_items.json")
    sim.add_argument("--cycles", type=int, default=1, help="Number of times the snapshot is processed")
    sim.add_argument("--wait", action="store_true", help="Wait for trades to settle after each cycle")
    sim.add_argument("--in-memory", action="store_true", help="Keep decisions and sessions in memory only")
    sim.add_argument("--model-id", default=None, help="Register the trained policy under this id")
    sim.add_argument("--model-version", default="1.0.0")
    sim.add_argument("--output", choices=("table", "json"), default="table")

    opp = sub.add_parser("opportunities", help="Rank flipping opportunities from a price snapshot")
    opp.add_argument("--prices", dest="prices_path", required=True, help="JSON mapping of item id to price data")
    opp.add_argument("--limit", type=int, default=50)
    opp.add_argument("--output", choices=("table", "json"), default="table")

    mdl = sub.add_parser("models", help="Compare registered models")
    mdl.add_argument("--promote", default=None, help="Set this model id as production first")
    mdl.add_argument("--limit", type=int, default=10)
    mdl.add_argument("--output", choices=("table", "json"), default="table")

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command in ("health-check", "doctor"):
            res = health_check(args.config)
            print(res.output)
            return res.exit_code

        if args.command == "simulate":
            res = simulate_command(
                args.config,
                items_path=args.items_path,
                cycles=args.cycles,
                wait=args.wait,
                in_memory=args.in_memory,
                model_id=args.model_id,
                model_version=args.model_version,
                output=args.output,
            )
            print(res.output)
            return res.exit_code

        if args.command == "opportunities":
            res = opportunities_command(
                args.config,
                prices_path=args.prices_path,
                limit=args.limit,
                output=args.output,
            )
            print(res.output)
            return res.exit_code

        if args.command == "models":
            res = models_command(
                args.config,
                promote=args.promote,
                limit=args.limit,
                output=args.output,
            )
            print(res.output)
            return res.exit_code

        raise GEAITraderError(f"Unknown command: {args.command}")
    except GEAITraderError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
