from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .config import FlowConfig, PersistenceConfig
from .errors import ConfigurationError, ErrorContext, config_missing_field, config_wrong_type
from .imports import load_instance, resolve_callable
from .stages import Stage, Transition

_TRANSITION_KEYS = {"target", "event", "after", "condition", "middleware"}
_STAGE_KEYS = {"name", "transitions", "data", "on_enter", "on_exit", "effect"}


def _unknown_keys(entry: Dict[str, Any], allowed: set, where: str, path: Optional[str]) -> None:
    extra = sorted(set(entry) - allowed)
    if extra:
        ctx = ErrorContext().add("entry", where).add("unknown_keys", extra)
        if path:
            ctx.add("config_path", path)
        raise ConfigurationError(
            f"Unknown keys in {where}: {', '.join(extra)}",
            why="Only known keys are accepted so typos don't pass silently.",
            fix=f"Use only: {', '.join(sorted(allowed))}",
            context=ctx,
        )


def _as_list(value: Any, field: str, path: Optional[str]) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise config_wrong_type(field, "list", type(value).__name__, path)
    return value


class ConfigLoader:
    @staticmethod
    def load_yaml(path: str | Path) -> Dict[str, Any]:
        p = Path(path)
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise config_wrong_type(
                field="(root)",
                expected="mapping/object",
                got=type(data).__name__,
                path=str(p),
            )
        return data

    @staticmethod
    def _load_transition(
        raw: Any, stage_name: str, index: int, path: Optional[str]
    ) -> Transition:
        where = f"stages[{stage_name}].transitions[{index}]"
        if not isinstance(raw, dict):
            raise config_wrong_type(where, "mapping", type(raw).__name__, path)
        _unknown_keys(raw, _TRANSITION_KEYS, where, path)
        if "target" not in raw:
            raise config_missing_field(f"{where}.target", path)

        middleware = [
            load_instance(m, f"{where}.middleware", path)
            for m in _as_list(raw.get("middleware"), f"{where}.middleware", path)
        ]
        return Transition(
            target=raw["target"],
            event=raw.get("event"),
            after=raw.get("after"),
            condition=resolve_callable(raw.get("condition"), f"{where}.condition", path),
            middleware=tuple(middleware),
        )

    @staticmethod
    def _load_stage(raw: Any, index: int, path: Optional[str]) -> Stage:
        where = f"stages[{index}]"
        if not isinstance(raw, dict):
            raise config_wrong_type(where, "mapping", type(raw).__name__, path)
        _unknown_keys(raw, _STAGE_KEYS, where, path)

        name = raw.get("name")
        if not name or not isinstance(name, str):
            raise config_missing_field(f"{where}.name", path)

        transitions = [
            ConfigLoader._load_transition(t, name, i, path)
            for i, t in enumerate(_as_list(raw.get("transitions"), f"stages[{name}].transitions", path))
        ]
        return Stage(
            name=name,
            transitions=tuple(transitions),
            data=raw.get("data"),
            on_enter=resolve_callable(raw.get("on_enter"), f"stages[{name}].on_enter", path),
            on_exit=resolve_callable(raw.get("on_exit"), f"stages[{name}].on_exit", path),
            effect=raw.get("effect"),
        )

    @staticmethod
    def _load_persistence(raw: Any, path: Optional[str]) -> Optional[PersistenceConfig]:
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise config_wrong_type("persistence", "mapping", type(raw).__name__, path)
        _unknown_keys(raw, set(PersistenceConfig.__dataclass_fields__), "persistence", path)
        return PersistenceConfig(**raw)

    @staticmethod
    def from_dict(data: Dict[str, Any], path: Optional[str] = None) -> FlowConfig:
        """Build a FlowConfig from an already-parsed mapping (e.g. YAML)."""
        initial = data.get("initial")
        if not initial or not isinstance(initial, str):
            raise config_missing_field("initial", path)

        stages = [
            ConfigLoader._load_stage(s, i, path)
            for i, s in enumerate(_as_list(data.get("stages"), "stages", path))
        ]
        if not stages:
            raise config_missing_field("stages", path)

        plugins = [
            load_instance(p, "plugins", path) for p in _as_list(data.get("plugins"), "plugins", path)
        ]
        middleware = [
            load_instance(m, "middleware", path)
            for m in _as_list(data.get("middleware"), "middleware", path)
        ]

        effects = data.get("effects") or {}
        if not isinstance(effects, dict):
            raise config_wrong_type("effects", "mapping", type(effects).__name__, path)

        persistence = ConfigLoader._load_persistence(data.get("persistence"), path)
        if persistence is not None and persistence.enabled:
            if not any(getattr(p, "name", None) == "persistence" for p in plugins):
                from .extras.persistence import PersistencePlugin

                plugins.append(PersistencePlugin.from_config(persistence))

        return FlowConfig(
            initial=initial,
            stages=stages,
            plugins=plugins,
            middleware=middleware,
            effects=dict(effects),
            persistence=persistence,
        )

    @staticmethod
    def load_flow_config(path: str | Path) -> FlowConfig:
        data = ConfigLoader.load_yaml(path)
        return ConfigLoader.from_dict(data, str(path))
