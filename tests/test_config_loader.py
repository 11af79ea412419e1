"""Tests for loading FlowConfig from YAML."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from stageflow import ConfigLoader, ConfigurationError, StageFlowEngine
from stageflow.extras import PersistencePlugin
from stageflow.testing import ManualClock

import fixture_hooks


def write(tmp_path: Path, body: str) -> Path:
    p = tmp_path / "flow.yaml"
    p.write_text(textwrap.dedent(body), encoding="utf-8")
    return p


def test_load_flow_config_builds_stages(flow_yaml: Path):
    """Stages, transitions, data and effects come through as typed objects."""
    cfg = ConfigLoader.load_flow_config(flow_yaml)

    assert cfg.initial == "idle"
    assert cfg.stage_names() == ["idle", "running", "done"]
    idle = cfg.find_stage("idle")
    assert idle.data == {"count": 0}
    assert idle.transitions[0].event == "start"
    assert idle.transitions[0].target == "running"

    running = cfg.find_stage("running")
    assert running.effect == "spinner"
    assert [t.after for t in running.transitions] == [None, 2000]
    assert cfg.effects == {"spinner": {"kind": "css"}}
    assert cfg.persistence is None


async def test_loaded_config_runs(flow_yaml: Path):
    clock = ManualClock()
    engine = StageFlowEngine(ConfigLoader.load_flow_config(flow_yaml), clock=clock)
    await engine.start()

    await engine.send("start")
    assert engine.get_current_stage_effect() == "spinner"
    assert engine.resolve_effect("spinner") == {"kind": "css"}

    await clock.advance(2000)
    assert engine.get_current_stage() == "idle"


def test_dotted_paths_resolve(tmp_path: Path):
    p = write(
        tmp_path,
        """\
        initial: a
        stages:
          - name: a
            on_enter: "fixture_hooks:record_enter"
            transitions:
              - event: go
                target: b
                condition: "fixture_hooks:always_true"
                middleware:
                  - factory: "fixture_hooks:make_tagging_middleware"
                    options: {tag: scoped}
          - name: b
        middleware:
          - "fixture_hooks:audit_middleware"
        plugins:
          - factory: "fixture_hooks:CountingPlugin"
            options: {start: 3}
        """,
    )

    cfg = ConfigLoader.load_flow_config(p)

    a = cfg.find_stage("a")
    assert a.on_enter is fixture_hooks.record_enter
    assert a.transitions[0].condition is fixture_hooks.always_true
    assert [m.name for m in a.transitions[0].middleware] == ["tagging-scoped"]
    assert cfg.middleware == [fixture_hooks.audit_middleware]
    assert cfg.plugins[0].count == 3


async def test_yaml_hooks_run_in_engine(tmp_path: Path):
    p = write(
        tmp_path,
        """\
        initial: a
        stages:
          - name: a
            transitions:
              - event: go
                target: b
                middleware: ["fixture_hooks:make_tagging_middleware"]
          - name: b
            on_enter: "fixture_hooks:record_enter"
        plugins: ["fixture_hooks:CountingPlugin"]
        """,
    )
    engine = StageFlowEngine(ConfigLoader.load_flow_config(p), clock=ManualClock())
    fixture_hooks.entered.clear()
    await engine.start()

    await engine.send("go")

    assert fixture_hooks.entered == ["b"]
    assert engine.get_current_data() == {"tag": "tagged"}
    assert engine.get_plugin("counting").count == 1


def test_unknown_stage_key_is_rejected(tmp_path: Path):
    p = write(
        tmp_path,
        """\
        initial: a
        stages:
          - name: a
            on_entry: "fixture_hooks:record_enter"
        """,
    )
    with pytest.raises(ConfigurationError, match="Unknown keys in stages\\[0\\]: on_entry"):
        ConfigLoader.load_flow_config(p)


def test_unknown_transition_key_is_rejected(tmp_path: Path):
    p = write(
        tmp_path,
        """\
        initial: a
        stages:
          - name: a
            transitions:
              - target: a
                delay: 10
        """,
    )
    with pytest.raises(ConfigurationError, match="delay"):
        ConfigLoader.load_flow_config(p)


def test_missing_initial(tmp_path: Path):
    p = write(tmp_path, "stages: [{name: a}]\n")
    with pytest.raises(ConfigurationError, match="missing required field: 'initial'"):
        ConfigLoader.load_flow_config(p)


def test_missing_stages(tmp_path: Path):
    p = write(tmp_path, "initial: a\n")
    with pytest.raises(ConfigurationError, match="missing required field: 'stages'"):
        ConfigLoader.load_flow_config(p)


def test_missing_transition_target(tmp_path: Path):
    p = write(
        tmp_path,
        """\
        initial: a
        stages:
          - name: a
            transitions:
              - event: go
        """,
    )
    with pytest.raises(ConfigurationError, match="transitions\\[0\\].target"):
        ConfigLoader.load_flow_config(p)


def test_stages_must_be_a_list(tmp_path: Path):
    p = write(tmp_path, "initial: a\nstages: {a: {}}\n")
    with pytest.raises(ConfigurationError, match="wrong type"):
        ConfigLoader.load_flow_config(p)


def test_root_must_be_mapping(tmp_path: Path):
    p = write(tmp_path, "- just\n- a list\n")
    with pytest.raises(ConfigurationError, match="'\\(root\\)' has wrong type"):
        ConfigLoader.load_flow_config(p)


def test_error_carries_config_path(tmp_path: Path):
    p = write(tmp_path, "initial: a\n")
    with pytest.raises(ConfigurationError) as exc_info:
        ConfigLoader.load_flow_config(p)
    assert exc_info.value.context.get("config_path") == str(p)


def test_loader_does_not_validate_targets(broken_flow_yaml: Path):
    """Structural loading succeeds; target checks happen when the engine validates."""
    cfg = ConfigLoader.load_flow_config(broken_flow_yaml)
    with pytest.raises(ConfigurationError, match="Target stage 'nowhere' does not exist"):
        StageFlowEngine(cfg, clock=ManualClock())


# --- persistence section ---


def test_persistence_section_adds_plugin(tmp_path: Path):
    p = write(
        tmp_path,
        f"""\
        initial: a
        stages: [{{name: a}}]
        persistence:
          storage: json
          path: "{(tmp_path / 'state.json').as_posix()}"
          key: my-flow
          ttl: 60000
          version: "2"
        """,
    )

    cfg = ConfigLoader.load_flow_config(p)

    assert cfg.persistence.storage == "json"
    (plugin,) = cfg.plugins
    assert isinstance(plugin, PersistencePlugin)
    assert plugin.key == "my-flow"
    assert plugin.ttl == 60000
    assert plugin.flow_version == "2"


def test_disabled_persistence_adds_nothing(tmp_path: Path):
    p = write(
        tmp_path,
        """\
        initial: a
        stages: [{name: a}]
        persistence: {enabled: false}
        """,
    )
    cfg = ConfigLoader.load_flow_config(p)
    assert cfg.persistence.enabled is False
    assert cfg.plugins == []


def test_unknown_persistence_key(tmp_path: Path):
    p = write(
        tmp_path,
        """\
        initial: a
        stages: [{name: a}]
        persistence: {backend: redis}
        """,
    )
    with pytest.raises(ConfigurationError, match="Unknown keys in persistence: backend"):
        ConfigLoader.load_flow_config(p)


def test_from_dict_without_file():
    cfg = ConfigLoader.from_dict({"initial": "x", "stages": [{"name": "x"}]})
    assert cfg.stage_names() == ["x"]
