from __future__ import annotations

import pytest

from stageflow import ConfigurationError, RetryConfig, Stage, Transition, TransitionError
from stageflow.extras import (
    ErrorRecoveryManager,
    ErrorRecoveryPlugin,
    OperationError,
    RecoveryConfig,
    with_error_recovery,
)
from stageflow.testing import RecordingPlugin


class Sleeper:
    """Records requested sleeps instead of waiting."""

    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def flaky(failures: int, exc: Exception = ConnectionError("down")):
    calls = {"n": 0}

    async def operation():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc
        return calls["n"]

    operation.calls = calls
    return operation


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


async def test_succeeds_after_retries_with_backoff(sleeper):
    manager = ErrorRecoveryManager(sleep=sleeper)

    result = await manager.execute_with_retry(flaky(2), "fetch")

    assert result == 3
    assert sleeper.calls == [1.0, 2.0]


async def test_first_try_success_does_not_sleep(sleeper):
    manager = ErrorRecoveryManager(sleep=sleeper)
    assert await manager.execute_with_retry(flaky(0)) == 1
    assert sleeper.calls == []


async def test_exhaustion_raises_wrapped_error(sleeper, caplog):
    manager = ErrorRecoveryManager(sleep=sleeper)
    boom = ConnectionError("down")

    with pytest.raises(OperationError) as exc_info:
        await manager.execute_with_retry(flaky(10, boom), "fetch")

    err = exc_info.value
    assert err.what == "fetch failed: down"
    assert err.cause is boom
    assert err.context.get("attempt") == 3
    assert "All retry attempts exhausted for fetch (3 attempts)" in caplog.text


async def test_framework_errors_are_not_rewrapped(sleeper):
    manager = ErrorRecoveryManager(sleep=sleeper)
    original = TransitionError("nope")

    with pytest.raises(TransitionError) as exc_info:
        await manager.execute_with_retry(flaky(10, original))

    assert exc_info.value is original


async def test_configuration_errors_are_not_retried(sleeper):
    manager = ErrorRecoveryManager(sleep=sleeper)
    op = flaky(10, ConfigurationError("bad config"))

    with pytest.raises(ConfigurationError):
        await manager.execute_with_retry(op)

    assert op.calls["n"] == 1
    assert sleeper.calls == []


async def test_callbacks_receive_errors(sleeper):
    retries, exhausted, errors = [], [], []
    config = RecoveryConfig(
        retry=RetryConfig(max_attempts=2, base_delay=50),
        on_retry=lambda e, attempt, delay: retries.append((attempt, delay)),
        on_retry_exhausted=lambda e, attempts: exhausted.append(attempts),
        on_error=lambda e: errors.append(e.code),
    )
    manager = ErrorRecoveryManager(config=config, sleep=sleeper)

    with pytest.raises(OperationError):
        await manager.execute_with_retry(flaky(10))

    assert retries == [(1, 50)]
    assert exhausted == [2]
    assert errors == ["OPERATION_ERROR"]


async def test_custom_should_retry(sleeper):
    config = RecoveryConfig(should_retry=lambda error, attempt: isinstance(error.cause, TimeoutError))
    manager = ErrorRecoveryManager(config=config, sleep=sleeper)
    op = flaky(10, ValueError("bad input"))

    with pytest.raises(OperationError):
        await manager.execute_with_retry(op)

    assert op.calls["n"] == 1


async def test_max_retry_time_stops_the_loop():
    elapsed = {"ms": 0.0}

    async def sleep(seconds):
        elapsed["ms"] += seconds * 1000

    config = RecoveryConfig(
        retry=RetryConfig(max_attempts=10, base_delay=1000, max_delay=1000),
        max_retry_time=2500,
    )
    manager = ErrorRecoveryManager(config=config, sleep=sleep, now=lambda: elapsed["ms"])
    op = flaky(100)

    with pytest.raises(OperationError):
        await manager.execute_with_retry(op)

    assert op.calls["n"] == 4


def test_update_config_replaces_fields():
    manager = ErrorRecoveryManager()
    manager.update_config(fallback_stage="error")
    assert manager.config.fallback_stage == "error"

    with pytest.raises(ValueError):
        manager.update_config(retry=RetryConfig(max_attempts=0))


async def test_with_error_recovery_helper(sleeper):
    result = await with_error_recovery(flaky(1), operation_name="load", sleep=sleeper)
    assert result == 2


# --- with an engine ---


def recovery_stages():
    return [
        Stage("form", transitions=(Transition("sent", event="submit"),)),
        Stage("sent"),
        Stage("error", transitions=(Transition("form", event="retry"),)),
    ]


async def test_fallback_stage_after_exhaustion(make_engine, sleeper):
    engine = make_engine(initial="form", stages=recovery_stages())
    await engine.start()
    manager = ErrorRecoveryManager(engine, RecoveryConfig(fallback_stage="error"), sleep=sleeper)

    async def failing_submit():
        raise ConnectionError("offline")

    with pytest.raises(OperationError, match="Stage submit failed: offline"):
        await manager.transition_with_retry(failing_submit, "submit")

    assert engine.get_current_stage() == "error"


async def test_failed_fallback_is_logged(make_engine, sleeper, caplog):
    engine = make_engine(initial="form", stages=recovery_stages())
    await engine.start()
    manager = ErrorRecoveryManager(engine, RecoveryConfig(fallback_stage="missing"), sleep=sleeper)

    with pytest.raises(OperationError):
        await manager.execute_with_retry(flaky(10))

    assert engine.get_current_stage() == "form"
    assert "Fallback to stage 'missing' failed" in caplog.text


async def test_transition_with_retry_success(make_engine, sleeper):
    engine = make_engine(initial="form", stages=recovery_stages())
    await engine.start()
    manager = ErrorRecoveryManager(engine, sleep=sleeper)

    await manager.transition_with_retry(lambda: engine.send("submit"), "submit")

    assert engine.get_current_stage() == "sent"


async def test_install_plugin_with_retry(make_engine, sleeper):
    engine = make_engine(initial="form", stages=recovery_stages())
    await engine.start()
    manager = ErrorRecoveryManager(engine, sleep=sleeper)

    await manager.install_plugin_with_retry(RecordingPlugin("late"))

    assert engine.get_installed_plugins() == ["late"]


async def test_plugin_attaches_manager_and_state(make_engine, sleeper):
    plugin = ErrorRecoveryPlugin(RecoveryConfig(fallback_stage="error"), sleep=sleeper)
    engine = make_engine(initial="form", stages=recovery_stages(), plugins=[plugin])
    await engine.start()

    assert plugin.manager is not None
    assert plugin.manager.engine is engine
    assert engine.get_plugin_state("error-recovery") == {"fallback_stage": "error", "max_attempts": 3}

    with pytest.raises(OperationError):
        await plugin.manager.execute_with_retry(flaky(10))
    assert engine.get_current_stage() == "error"

    await engine.stop()
    assert plugin.manager is None
