"""Configuration checks run once before an engine accepts a FlowConfig.

``validate_config`` collects every problem instead of stopping at the first,
so a single run reports the whole picture. ``validate_config_strict`` turns
the errors into one ``ConfigurationError`` and routes warnings to a
``Diagnostics`` sink.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from .config import STORAGE_TYPES, FlowConfig, PersistenceConfig
from .errors import PluginError, config_invalid
from .logger import Diagnostics
from .plugins import dependencies_of, topological_order
from .stages import Stage, Transition

# Timed transitions longer than this are flagged as probably unintended.
LONG_AFTER_MS = 5 * 60 * 1000


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _check_middleware(middleware: Sequence[Any], prefix: str, result: ValidationResult) -> None:
    seen: Set[str] = set()
    for i, mw in enumerate(middleware, start=1):
        name = getattr(mw, "name", None)
        if not _non_empty_str(name):
            result.errors.append(f"{prefix} {i}: Middleware name is required and must be a string")
            continue
        if name in seen:
            result.errors.append(f"{prefix} {i}: Duplicate middleware name '{name}'")
        seen.add(name)
        if not callable(getattr(mw, "execute", None)):
            result.errors.append(f"{prefix} {i} '{name}': execute must be callable")


def _check_transition(
    stage: Stage, index: int, transition: Any, stage_names: Set[str], result: ValidationResult
) -> None:
    prefix = f"Stage '{stage.name}' transition {index}"
    if not isinstance(transition, Transition):
        result.errors.append(f"{prefix}: expected a Transition, got {type(transition).__name__}")
        return
    if not _non_empty_str(transition.target):
        result.errors.append(f"{prefix}: Target stage is required")
        return
    if transition.target not in stage_names:
        result.errors.append(f"{prefix}: Target stage '{transition.target}' does not exist")

    prefix = f"Stage '{stage.name}' transition to '{transition.target}'"
    if transition.after is not None:
        if not _is_number(transition.after) or transition.after < 0:
            result.errors.append(f"{prefix}: 'after' must be a non-negative number of milliseconds")
        elif transition.after > LONG_AFTER_MS:
            result.warnings.append(
                f"{prefix}: 'after' is very long ({transition.after}ms). Consider if this is intentional."
            )
    if transition.event is not None and not _non_empty_str(transition.event):
        result.errors.append(f"{prefix}: Event name must be a non-empty string")
    if transition.condition is not None and not callable(transition.condition):
        result.errors.append(f"{prefix}: Condition must be callable")
    if transition.middleware:
        _check_middleware(transition.middleware, f"{prefix} middleware", result)


def _check_stages(config: FlowConfig, result: ValidationResult) -> Dict[str, Stage]:
    stage_names = {s.name for s in config.stages if isinstance(s, Stage)}
    stages: Dict[str, Stage] = {}

    for i, stage in enumerate(config.stages, start=1):
        if not isinstance(stage, Stage):
            result.errors.append(f"Stage {i}: expected a Stage, got {type(stage).__name__}")
            continue
        if not _non_empty_str(stage.name):
            result.errors.append(f"Stage {i}: Stage name is required")
            continue
        if stage.name in stages:
            result.errors.append(f"Stage {i}: Duplicate stage name '{stage.name}'")
            continue
        stages[stage.name] = stage

        timed = [t for t in stage.transitions if isinstance(t, Transition) and t.after is not None]
        if len(timed) > 1:
            result.errors.append(
                f"Stage '{stage.name}' has multiple transitions with 'after'. "
                "Only one automatic transition is allowed per stage."
            )

        for j, transition in enumerate(stage.transitions, start=1):
            _check_transition(stage, j, transition, stage_names, result)

        if stage.effect is not None and not _non_empty_str(stage.effect):
            result.errors.append(f"Stage '{stage.name}': Effect must be a non-empty string")
        if stage.on_enter is not None and not callable(stage.on_enter):
            result.errors.append(f"Stage '{stage.name}': on_enter must be callable")
        if stage.on_exit is not None and not callable(stage.on_exit):
            result.errors.append(f"Stage '{stage.name}': on_exit must be callable")

    return stages


def _check_plugins(plugins: Sequence[Any], result: ValidationResult) -> None:
    graph: Dict[str, List[str]] = {}
    for i, plugin in enumerate(plugins, start=1):
        name = getattr(plugin, "name", None)
        if not _non_empty_str(name):
            result.errors.append(f"Plugin {i}: Plugin name is required and must be a string")
            continue
        if name in graph:
            result.errors.append(f"Plugin {i}: Duplicate plugin name '{name}'")
            continue
        version = getattr(plugin, "version", None)
        if version is not None and not isinstance(version, str):
            result.errors.append(f"Plugin {i} '{name}': version must be a string")
        graph[name] = dependencies_of(plugin)

    for name, deps in graph.items():
        for dep in deps:
            if dep not in graph:
                result.errors.append(
                    f"Plugin '{name}' depends on '{dep}' which is not included in the configuration"
                )

    try:
        topological_order(graph)
    except PluginError as e:
        result.errors.append(e.what)


def _check_persistence(persistence: PersistenceConfig, result: ValidationResult) -> None:
    if not isinstance(persistence.enabled, bool):
        result.errors.append("Persistence: enabled must be a boolean")
    if not _non_empty_str(persistence.key):
        result.errors.append("Persistence: key is required and must be a string")
    if persistence.storage not in STORAGE_TYPES:
        result.errors.append(f"Persistence: storage must be one of: {', '.join(STORAGE_TYPES)}")
    if persistence.storage in ("json", "sqlite") and not persistence.path:
        result.errors.append(f"Persistence: '{persistence.storage}' storage requires a path")
    if persistence.ttl is not None and (not _is_number(persistence.ttl) or persistence.ttl <= 0):
        result.errors.append("Persistence: ttl must be a positive number")


def _reachable(config: FlowConfig, stages: Dict[str, Stage]) -> Set[str]:
    reachable = {config.initial}
    to_visit = [config.initial]
    while to_visit:
        stage = stages.get(to_visit.pop())
        if stage is None:
            continue
        for transition in stage.transitions:
            if isinstance(transition, Transition) and transition.target not in reachable:
                reachable.add(transition.target)
                to_visit.append(transition.target)
    return reachable


def _add_warnings(config: FlowConfig, stages: Dict[str, Stage], result: ValidationResult) -> None:
    reachable = _reachable(config, stages)
    for name, stage in stages.items():
        if name not in reachable:
            result.warnings.append(f"Stage '{name}' is not reachable from the initial stage")
        if not stage.transitions:
            result.warnings.append(f"Stage '{name}' has no outgoing transitions (potential dead end)")
        for transition in stage.transitions:
            if not isinstance(transition, Transition):
                continue
            if (
                transition.target == name
                and transition.condition is None
                and transition.event is None
                and not transition.is_timed
            ):
                result.warnings.append(
                    f"Stage '{name}' has an unconditional self-loop transition that may cause infinite loops"
                )

    if config.effects:
        used = {s.effect for s in stages.values() if s.effect}
        for stage in stages.values():
            if stage.effect and stage.effect not in config.effects:
                result.warnings.append(f"Stage '{stage.name}' references undefined effect '{stage.effect}'")
        for effect_name in config.effects:
            if effect_name not in used:
                result.warnings.append(f"Effect '{effect_name}' is defined but not used by any stage")


def validate_config(config: FlowConfig) -> ValidationResult:
    result = ValidationResult()

    if not _non_empty_str(config.initial):
        result.errors.append("Initial stage must be specified")
    if not config.stages:
        result.errors.append("At least one stage must be defined")
        return result

    stages = _check_stages(config, result)
    if config.initial and config.initial not in stages:
        result.errors.append(f"Initial stage '{config.initial}' not found in stages")

    if config.plugins:
        _check_plugins(config.plugins, result)
    if config.middleware:
        _check_middleware(config.middleware, "Middleware", result)
    for effect_name in config.effects:
        if not _non_empty_str(effect_name):
            result.errors.append(f"Effect name {effect_name!r} must be a non-empty string")
    if config.persistence is not None:
        _check_persistence(config.persistence, result)

    _add_warnings(config, stages, result)
    return result


def validate_config_strict(
    config: FlowConfig, diagnostics: Optional[Diagnostics] = None
) -> ValidationResult:
    """Validate and raise ``ConfigurationError`` listing every error found."""
    result = validate_config(config)
    if result.errors:
        raise config_invalid(result.errors)
    if diagnostics is not None:
        for warning in result.warnings:
            diagnostics.warn_once(f"config:{warning}", "%s", warning)
    return result
