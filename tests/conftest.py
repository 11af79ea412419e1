from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest

from stageflow import FlowConfig, Stage, StageFlowEngine, Transition
from stageflow.logger import Diagnostics, get_logger
from stageflow.testing import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def diagnostics() -> Diagnostics:
    return Diagnostics(get_logger("stageflow.tests"))


@pytest.fixture
def make_engine(clock: ManualClock, diagnostics: Diagnostics) -> Callable[..., StageFlowEngine]:
    """Build an engine on the shared ManualClock from a FlowConfig or its fields."""

    def factory(config: Any = None, **kwargs: Any) -> StageFlowEngine:
        if config is None:
            config = FlowConfig(**kwargs)
            kwargs = {}
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("diagnostics", diagnostics)
        return StageFlowEngine(config, **kwargs)

    return factory


@pytest.fixture
def checkout_config() -> FlowConfig:
    """cart -> payment -> done, with a 5s payment timeout back to the cart."""
    return FlowConfig(
        initial="cart",
        stages=[
            Stage("cart", transitions=(Transition("payment", event="checkout"),), data={"items": 0}),
            Stage(
                "payment",
                transitions=(
                    Transition("done", event="pay"),
                    Transition("cart", event="back"),
                    Transition("cart", after=5000),
                ),
            ),
            Stage("done"),
        ],
    )


@pytest.fixture
def timed_config() -> FlowConfig:
    """A moves to B after 100ms; B only leaves on an event."""
    return FlowConfig(
        initial="A",
        stages=[
            Stage("A", transitions=(Transition("B", after=100),)),
            Stage("B", transitions=(Transition("A", event="again"),)),
        ],
    )


@pytest.fixture
def flow_yaml(tmp_path: Path) -> Path:
    p = tmp_path / "flow.yaml"
    p.write_text(
        textwrap.dedent(
            """\
            initial: idle
            stages:
              - name: idle
                data: {count: 0}
                transitions:
                  - event: start
                    target: running
              - name: running
                effect: spinner
                transitions:
                  - event: finish
                    target: done
                  - after: 2000
                    target: idle
              - name: done
            effects:
              spinner: {kind: css}
            """
        ),
        encoding="utf-8",
    )
    return p


@pytest.fixture
def broken_flow_yaml(tmp_path: Path) -> Path:
    p = tmp_path / "broken.yaml"
    p.write_text(
        textwrap.dedent(
            """\
            initial: idle
            stages:
              - name: idle
                transitions:
                  - event: go
                    target: nowhere
            """
        ),
        encoding="utf-8",
    )
    return p
