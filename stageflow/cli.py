from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

from .config_loader import ConfigLoader
from .engine import StageFlowEngine
from .logger import get_logger
from .validation import validate_config
from .visualize import visualize


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="stageflow CLI")
    sub = p.add_subparsers(dest="command", required=True)

    val = sub.add_parser("validate", help="Validate a flow config and report errors and warnings.")
    val.add_argument("--config", type=str, default=None, help="Path to config YAML (or use STAGEFLOW_CONFIG).")

    vis = sub.add_parser("visualize", help="Print a Mermaid diagram of the flow.")
    vis.add_argument("--config", type=str, default=None, help="Path to config YAML (or use STAGEFLOW_CONFIG).")
    vis.add_argument("--output", "-o", type=str, default=None, help="Write the diagram to a file instead of stdout.")

    run = sub.add_parser("run", help="Start the flow, send events, and print where it ends up.")
    run.add_argument("--config", type=str, default=None, help="Path to config YAML (or use STAGEFLOW_CONFIG).")
    run.add_argument("events", nargs="*", help="Events to send, in order.")
    run.add_argument("--go-to", dest="go_to", type=str, default=None, help="Navigate to this stage after the events.")
    run.add_argument("--wait", type=float, default=0.0, help="Milliseconds to let timers run before stopping.")

    return p


def _resolve_config_path(cli_value: str | None) -> str:
    path = cli_value or os.getenv("STAGEFLOW_CONFIG")
    if not path:
        raise SystemExit("No config provided. Use --config or set STAGEFLOW_CONFIG.")
    return path


def cmd_validate(args) -> int:
    config_path = _resolve_config_path(args.config)
    cfg = ConfigLoader.load_flow_config(config_path)
    result = validate_config(cfg)

    for error in result.errors:
        print(f"error: {error}")
    for warning in result.warnings:
        print(f"warning: {warning}")

    if result.errors:
        print(f"{config_path}: invalid ({len(result.errors)} error(s))", file=sys.stderr)
        return 1
    print(f"{config_path}: ok ({len(cfg.stages)} stages, {len(result.warnings)} warning(s))")
    return 0


def cmd_visualize(args) -> int:
    config_path = _resolve_config_path(args.config)
    diagram = visualize(config_path)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(diagram + "\n")
    else:
        print(diagram)
    return 0


async def cmd_run(args) -> int:
    config_path = _resolve_config_path(args.config)
    cfg = ConfigLoader.load_flow_config(config_path)

    logger = get_logger("stageflow")
    engine = StageFlowEngine(cfg, logger=logger)
    await engine.start()
    try:
        for event in args.events:
            await engine.send(event)
        if args.go_to:
            await engine.go_to(args.go_to)
        if args.wait > 0:
            await asyncio.sleep(args.wait / 1000.0)

        print(
            json.dumps(
                {
                    "stage": engine.get_current_stage(),
                    "data": engine.get_current_data(),
                    "history": [h.stage for h in engine.get_history()],
                },
                default=str,
            )
        )
    finally:
        await engine.stop()
    return 0


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "validate":
        code = cmd_validate(args)
    elif args.command == "visualize":
        code = cmd_visualize(args)
    elif args.command == "run":
        code = asyncio.run(cmd_run(args))
    else:
        raise SystemExit(2)

    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
