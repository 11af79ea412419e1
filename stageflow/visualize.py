"""Flow visualization from a stage configuration.

Generates diagram source without starting an engine or running any hook.

Example:
    from stageflow import visualize

    # From a YAML config
    print(visualize("flow.yaml"))

    # Or from a FlowConfig built in code
    print(visualize(config))
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Set, Union

from .config import FlowConfig
from .config_loader import ConfigLoader
from .stages import Transition


def visualize(
    config: Union[str, Path, Dict[str, Any], FlowConfig],
    *,
    format: str = "mermaid",
) -> str:
    """Generate a diagram of stages and transitions.

    Args:
        config: Path to a YAML config, a config dict, or a FlowConfig.
        format: Output format. Currently only "mermaid" is supported.

    Returns:
        Diagram source string (Mermaid flowchart).

    Raises:
        ValueError: If format is not supported.

    Example:
        >>> print(visualize(config))
        flowchart LR
        %% initial: idle
        idle(["idle"]):::initial
        loading["loading"]
        idle -->|"start"| loading
        loading -->|"after 2000ms"| idle
    """
    if format != "mermaid":
        raise ValueError(f"Unsupported format: {format!r}. Use 'mermaid'.")

    if isinstance(config, FlowConfig):
        flow = config
    elif isinstance(config, dict):
        flow = ConfigLoader.from_dict(config)
    else:
        flow = ConfigLoader.load_flow_config(config)

    return _generate_mermaid(flow)


def _edge_label(transition: Transition) -> str:
    parts: List[str] = []
    if transition.event:
        parts.append(transition.event)
    if transition.is_timed:
        parts.append(f"after {transition.after:g}ms")
    label = " / ".join(parts) or "go_to"

    if transition.condition is not None:
        guard = getattr(transition.condition, "__name__", "condition")
        label = f"{label} [{guard}]"

    return label.replace('"', '\\"')


def _generate_mermaid(flow: FlowConfig) -> str:
    lines: List[str] = []
    lines.append("flowchart LR")
    lines.append("")

    lines.append("%% Edge labels: event / after Nms [condition]")
    lines.append(f"%% initial: {flow.initial}")
    lines.append("")

    declared: Set[str] = set()
    for stage in flow.stages:
        declared.add(stage.name)
        safe_id = _sanitize_id(stage.name)
        label = stage.name
        if stage.effect:
            label = f"{label}<br/>effect: {stage.effect}"
        if stage.name == flow.initial:
            lines.append(f'{safe_id}(["{label}"]):::initial')
        else:
            lines.append(f'{safe_id}["{label}"]')

    # Targets that are not declared stages (only reachable in unvalidated configs)
    unknown: Set[str] = set()
    for stage in flow.stages:
        for transition in stage.transitions:
            if transition.target not in declared:
                unknown.add(transition.target)
    for name in sorted(unknown):
        lines.append(f'{_sanitize_id("unknown_" + name)}["{name}"]:::unknown')
    lines.append("")

    edges = 0
    for stage in flow.stages:
        from_id = _sanitize_id(stage.name)
        for transition in stage.transitions:
            target = transition.target
            to_id = _sanitize_id("unknown_" + target if target in unknown else target)
            # Always quote edge labels for Mermaid 11.x compatibility
            lines.append(f'{from_id} -->|"{_edge_label(transition)}"| {to_id}')
            edges += 1
    if edges:
        lines.append("")

    lines.append("classDef initial stroke-width: 3px")
    if unknown:
        lines.append("classDef unknown stroke-dasharray: 5 5, stroke: #999")

    return "\n".join(lines)


def _sanitize_id(name: str) -> str:
    """Convert a name to a valid Mermaid node ID (alphanumerics and underscores)."""
    result = []
    for char in name:
        if char.isalnum() or char == "_":
            result.append(char)
        else:
            result.append("_")
    return "".join(result) or "node"
