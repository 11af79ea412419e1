#!/usr/bin/env python
"""
Embedded stageflow Application Example

Demonstrates:
- Loading a flow from YAML with hooks, middleware and effects
- Subscribing to stage changes
- Restoring from SQLite if a previous run left state behind
- Pruning old snapshots for retention

Run: python app.py
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

# Add the example directory to path so config can find the hooks module
HERE = Path(__file__).parent
sys.path.insert(0, str(HERE))

from stageflow import ConfigLoader, StageFlowEngine


async def main():
    # Relative storage paths in config.yaml resolve against the example directory
    os.chdir(HERE)
    config = ConfigLoader.load_flow_config(HERE / "config.yaml")
    engine = StageFlowEngine(config)
    persistence = engine.get_plugin("persistence")

    if persistence.has_persisted_state():
        print(f"Restoring from snapshot: {persistence.load()['stage']}")
    else:
        print(f"Starting fresh: {config.initial}")

    # --- Observability: print every stage change ---
    engine.subscribe(lambda stage, data: print(f"  [{stage}] data={data}"))

    await engine.start()

    # --- Demo: simulate a job workflow ---
    print("\n--- Running job workflow demo ---\n")
    if engine.get_current_stage() != "idle":
        await engine.go_to("idle")

    script = [
        ("start_job", None),
        ("complete", None),
        ("reset", None),
        ("start_job", None),
        ("fail", {"reason": "timeout"}),
        ("retry", None),
        ("complete", None),
    ]
    for event, data in script:
        print(f"Sending: {event}")
        await engine.send(event, data)

    print(f"\nFinal stage: {engine.get_current_stage()}")
    print("History:", " -> ".join(h.stage for h in engine.get_history()))

    await engine.stop()

    # --- Show snapshot history ---
    storage = persistence.storage
    print("\n--- Snapshot History (last 5) ---")
    for entry in storage.list_snapshots(persistence.key, limit=5):
        print(f"  {entry['id']}: {entry['stage']} at {entry['created_at']}")

    deleted = storage.prune(persistence.key, keep_last=50)
    if deleted:
        print(f"Pruned {deleted} old snapshot(s)")

    storage.close()
    print("\nDone. State persisted to state.db")


if __name__ == "__main__":
    asyncio.run(main())
