"""Stage hooks referenced from config.yaml."""

from __future__ import annotations


def log_enter(context):
    print(f"  entered {context.current} data={context.data}")


def is_retryable(context):
    # Failures sent with {"fatal": true} stay in the error stage until reset.
    return not (context.data or {}).get("fatal", False)
