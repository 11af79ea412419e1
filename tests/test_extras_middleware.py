from __future__ import annotations

import logging

import pytest

from stageflow import Middleware, MiddlewareError, TransitionError
from stageflow.context import TransitionContext
from stageflow.extras import (
    cache_middleware,
    compose_middleware,
    conditional_middleware,
    event_specific_middleware,
    logging_middleware,
    rate_limit_middleware,
    retry_middleware,
    stage_specific_middleware,
    timing_middleware,
    validation_middleware,
)
from stageflow.middleware import MiddlewarePipeline


class FakeTime:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def ctx(from_stage="cart", to_stage="payment", event="checkout", data=None):
    return TransitionContext(from_stage=from_stage, to_stage=to_stage, event=event, data=data, timestamp=0)


def counter(calls, name="counter"):
    async def execute(context, next_):
        calls.append(context.to_stage)
        await next_()

    return Middleware(name, execute)


async def run(*links, context=None):
    context = context or ctx()
    await MiddlewarePipeline(links).run(context)
    return context


# --- logging ---


async def test_logging_middleware_logs_transition(caplog):
    caplog.set_level(logging.INFO, logger="stageflow.tests.mw")
    mw = logging_middleware(logger=logging.getLogger("stageflow.tests.mw"))

    await run(mw)

    assert "Transition: cart -> payment (event: checkout)" in caplog.text


async def test_logging_middleware_includes_data_and_level(caplog):
    caplog.set_level(logging.DEBUG, logger="stageflow.tests.mw")
    mw = logging_middleware(level="debug", include_data=True, logger=logging.getLogger("stageflow.tests.mw"))

    await run(mw, context=ctx(event=None, data={"n": 1}))

    record = caplog.records[-1]
    assert record.levelno == logging.DEBUG
    assert "(event: direct, data: {'n': 1})" in record.getMessage()


def test_logging_middleware_rejects_unknown_level():
    with pytest.raises(ValueError, match="Unknown log level"):
        logging_middleware(level="loud")


# --- validation ---


async def test_validation_middleware_blocks_with_message():
    mw = validation_middleware(lambda c: c.data and c.data.get("ok"), error_message="not ok")

    with pytest.raises(MiddlewareError) as exc_info:
        await run(mw, context=ctx(data={"ok": False}))

    assert isinstance(exc_info.value.cause, ValueError)
    assert str(exc_info.value.cause) == "not ok"


async def test_validation_middleware_accepts_async_validator():
    calls = []

    async def valid(context):
        return True

    await run(validation_middleware(valid), counter(calls))
    assert calls == ["payment"]


# --- timing ---


async def test_timing_middleware_reports_duration(caplog):
    clock = FakeTime()
    seen = []

    async def slow(context, next_):
        clock.value += 42
        await next_()

    mw = timing_middleware(
        on_complete=lambda duration, context: seen.append((duration, context.to_stage)),
        log_timing=True,
        now=clock,
    )
    await run(mw, Middleware("slow", slow))

    assert seen == [(42, "payment")]
    assert "Transition cart -> payment took 42.0ms" in caplog.text


async def test_timing_middleware_threshold_suppresses_fast_logs(caplog):
    mw = timing_middleware(log_timing=True, threshold=10, now=FakeTime())
    await run(mw)
    assert "took" not in caplog.text


# --- rate limit ---


async def test_rate_limit_per_window():
    clock = FakeTime()
    mw = rate_limit_middleware(window_ms=1000, max_transitions=2, now=clock)
    pipeline = MiddlewarePipeline([mw])

    await pipeline.run(ctx())
    await pipeline.run(ctx())
    with pytest.raises(MiddlewareError, match="Rate limit exceeded for transition cart -> payment"):
        await pipeline.run(ctx())

    # Other keys have their own budget.
    await pipeline.run(ctx(to_stage="done"))

    clock.value = 1000
    await pipeline.run(ctx())


async def test_rate_limit_custom_key():
    mw = rate_limit_middleware(window_ms=1000, max_transitions=1, key=lambda c: "global", now=FakeTime())
    pipeline = MiddlewarePipeline([mw])

    await pipeline.run(ctx())
    with pytest.raises(MiddlewareError):
        await pipeline.run(ctx(to_stage="done"))


# --- conditional / scoped ---


async def test_conditional_middleware_runs_or_passes_through():
    inner_calls, after = [], []
    mw = conditional_middleware(lambda c: c.event == "checkout", counter(inner_calls, "inner"))

    assert mw.name == "conditional-inner"
    await run(mw, counter(after))
    await run(mw, counter(after), context=ctx(event="other"))

    assert inner_calls == ["payment"]
    assert after == ["payment", "payment"]


async def test_stage_specific_middleware_match_modes():
    calls = []
    from_mw = stage_specific_middleware(["cart"], counter(calls, "from"))
    to_mw = stage_specific_middleware(["cart"], counter(calls, "to"), match="to")
    both_mw = stage_specific_middleware(["cart", "payment"], counter(calls, "both"), match="both")

    await run(from_mw)
    await run(to_mw)
    await run(both_mw)

    assert calls == ["payment", "payment"]


def test_stage_specific_middleware_rejects_bad_match():
    with pytest.raises(ValueError, match="match must be one of"):
        stage_specific_middleware(["a"], counter([]), match="either")


async def test_event_specific_middleware():
    calls = []
    mw = event_specific_middleware(["checkout"], counter(calls))

    await run(mw)
    await run(mw, context=ctx(event="pay"))

    assert calls == ["payment"]


# --- compose ---


async def test_compose_runs_in_order_then_continues():
    log = []

    def step(name):
        async def execute(context, next_):
            log.append(name)
            await next_()

        return Middleware(name, execute)

    composed = compose_middleware(step("a"), step("b"))

    assert composed.name == "composed-a-b"
    await run(composed, step("after"))
    assert log == ["a", "b", "after"]


async def test_compose_short_circuit_stops_chain():
    log = []

    async def stop(context, next_):
        log.append("stop")

    await run(compose_middleware(Middleware("stop", stop)), counter(log))
    assert log == ["stop"]


async def test_compose_with_retry_replays_inner_links():
    attempts = []
    after = []

    async def flaky(context, next_):
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("try again")
        await next_()

    composed = compose_middleware(
        retry_middleware(max_retries=2, retry_delay=0),
        Middleware("flaky", flaky),
    )
    await run(composed, counter(after))

    assert len(attempts) == 3
    assert after == ["payment"]


async def test_retry_outside_compose_replays_composed_link():
    attempts = []
    after = []

    async def flaky(context, next_):
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionError("try again")
        await next_()

    await run(
        retry_middleware(max_retries=1, retry_delay=0),
        compose_middleware(counter([], "inner"), Middleware("flaky", flaky)),
        counter(after),
    )

    assert len(attempts) == 2
    assert after == ["payment"]


# --- retry ---


async def test_retry_replays_downstream_until_success():
    attempts = []
    sleeps = []

    async def flaky(context, next_):
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("try again")
        await next_()

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    after = []
    await run(
        retry_middleware(max_retries=2, retry_delay=250, sleep=fake_sleep),
        Middleware("flaky", flaky),
        counter(after),
    )

    assert len(attempts) == 3
    assert sleeps == [0.25, 0.25]
    assert after == ["payment"]


async def test_retry_gives_up_after_max_retries():
    attempts = []

    async def broken(context, next_):
        attempts.append(1)
        raise ConnectionError("down")

    with pytest.raises(MiddlewareError) as exc_info:
        await run(retry_middleware(max_retries=1, retry_delay=0), Middleware("broken", broken))

    assert len(attempts) == 2
    assert exc_info.value.context.get("middleware") == "broken"


async def test_retry_should_retry_sees_original_error():
    seen = []

    async def broken(context, next_):
        raise KeyError("k")

    def should_retry(error, context):
        seen.append(type(error))
        return False

    with pytest.raises(MiddlewareError):
        await run(
            retry_middleware(max_retries=5, retry_delay=0, should_retry=should_retry),
            Middleware("broken", broken),
        )

    assert seen == [KeyError]


async def test_retry_never_retries_cancellation():
    attempts = []

    async def deny(context, next_):
        attempts.append(1)
        context.cancel()

    with pytest.raises(TransitionError, match="Transition cancelled"):
        await run(retry_middleware(max_retries=3, retry_delay=0), Middleware("deny", deny))

    assert attempts == [1]


# --- cache ---


async def test_cache_skips_downstream_within_ttl():
    clock = FakeTime()
    calls = []
    mw = cache_middleware(ttl=1000, now=clock)
    pipeline = MiddlewarePipeline([mw, counter(calls)])

    await pipeline.run(ctx())
    clock.value = 500
    await pipeline.run(ctx())
    await pipeline.run(ctx(event="other"))
    clock.value = 1000
    await pipeline.run(ctx())

    assert calls == ["payment", "payment", "payment"]


async def test_cache_does_not_remember_failures():
    calls = []

    async def fail_once(context, next_):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first")
        await next_()

    pipeline = MiddlewarePipeline([cache_middleware(now=FakeTime()), Middleware("fail", fail_once)])
    with pytest.raises(MiddlewareError):
        await pipeline.run(ctx())
    await pipeline.run(ctx())

    assert len(calls) == 2


# --- with an engine ---


async def test_extras_work_in_engine(make_engine, checkout_config):
    durations = []
    engine = make_engine(checkout_config)
    engine.add_middleware(timing_middleware(on_complete=lambda d, c: durations.append(d), now=FakeTime()))
    engine.add_middleware(
        stage_specific_middleware(["payment"], validation_middleware(lambda c: False, error_message="locked"))
    )
    await engine.start()

    await engine.send("checkout")
    with pytest.raises(MiddlewareError, match="locked"):
        await engine.send("pay")

    assert engine.get_current_stage() == "payment"
    assert durations == [0]
