"""Ready-made middleware factories.

Each factory returns a ``Middleware``; add it globally with
``engine.add_middleware(...)`` or attach it to a single transition.

Example:
    engine.add_middleware(logging_middleware(include_data=True))
    engine.add_middleware(
        stage_specific_middleware(["checkout"], rate_limit_middleware(window_ms=1000, max_transitions=5))
    )
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from ..awaitables import call_maybe_async
from ..context import TransitionContext
from ..errors import MiddlewareError, TransitionError
from ..logger import get_logger
from ..middleware import Middleware, _Chain

Predicate = Callable[[TransitionContext], Any]
KeyFn = Callable[[TransitionContext], str]

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def _event_label(context: TransitionContext) -> str:
    return context.event or "direct"


def logging_middleware(
    *,
    level: str = "info",
    include_data: bool = False,
    logger: Any = None,
) -> Middleware:
    """Log every transition that reaches this point of the chain."""
    if level not in _LEVELS:
        raise ValueError(f"Unknown log level {level!r}. Use one of: {', '.join(_LEVELS)}")
    log = logger or get_logger("stageflow")
    levelno = _LEVELS[level]

    async def execute(context: TransitionContext, next_: Any) -> None:
        if include_data:
            log.log(
                levelno,
                "Transition: %s -> %s (event: %s, data: %r)",
                context.from_stage,
                context.to_stage,
                _event_label(context),
                context.data,
            )
        else:
            log.log(
                levelno,
                "Transition: %s -> %s (event: %s)",
                context.from_stage,
                context.to_stage,
                _event_label(context),
            )
        await next_()

    return Middleware("logging-middleware", execute)


def validation_middleware(validator: Predicate, *, error_message: str = "Validation failed") -> Middleware:
    """Reject the transition when ``validator(context)`` is falsy."""

    async def execute(context: TransitionContext, next_: Any) -> None:
        if not await call_maybe_async(validator, context):
            raise ValueError(error_message)
        await next_()

    return Middleware("validation-middleware", execute)


def timing_middleware(
    *,
    on_complete: Optional[Callable[[float, TransitionContext], Any]] = None,
    log_timing: bool = False,
    threshold: float = 0.0,
    logger: Any = None,
    now: Callable[[], float] = _monotonic_ms,
) -> Middleware:
    """Measure how long the rest of the chain takes, in milliseconds."""
    log = logger or get_logger("stageflow")

    async def execute(context: TransitionContext, next_: Any) -> None:
        started = now()
        await next_()
        duration = now() - started

        if log_timing and duration >= threshold:
            log.info(
                "Transition %s -> %s took %.1fms", context.from_stage, context.to_stage, duration
            )
        if on_complete is not None:
            await call_maybe_async(on_complete, duration, context)

    return Middleware("timing-middleware", execute)


def rate_limit_middleware(
    *,
    window_ms: float,
    max_transitions: int,
    key: Optional[KeyFn] = None,
    now: Callable[[], float] = _monotonic_ms,
) -> Middleware:
    """Allow at most ``max_transitions`` per key in each fixed window."""
    key_fn = key or (lambda ctx: f"{ctx.from_stage}-{ctx.to_stage}")
    windows: Dict[str, Tuple[int, float]] = {}

    async def execute(context: TransitionContext, next_: Any) -> None:
        k = key_fn(context)
        current = now()
        count, resets_at = windows.get(k, (0, 0.0))
        if current >= resets_at:
            count, resets_at = 0, current + window_ms

        if count >= max_transitions:
            raise RuntimeError(
                f"Rate limit exceeded for transition {context.from_stage} -> {context.to_stage}"
            )
        windows[k] = (count + 1, resets_at)
        await next_()

    return Middleware("rate-limit-middleware", execute)


def conditional_middleware(condition: Predicate, middleware: Middleware) -> Middleware:
    """Run ``middleware`` only when ``condition(context)`` holds; otherwise pass through."""

    async def execute(context: TransitionContext, next_: Any) -> None:
        if await call_maybe_async(condition, context):
            await middleware.execute(context, next_)
        else:
            await next_()

    return Middleware(f"conditional-{middleware.name}", execute)


def compose_middleware(*middlewares: Middleware) -> Middleware:
    """Bundle several middleware into one link that runs them in order."""
    name = "composed-" + "-".join(m.name for m in middlewares)

    async def execute(context: TransitionContext, next_: Any) -> None:
        # Inner links run as their own chain; the tail hands back to the outer one.
        position = getattr(next_, "position", None)

        async def tail(_context: TransitionContext, _next: Any) -> None:
            if position is None:
                await next_()
            else:
                await next_(position)

        await _Chain([*middlewares, Middleware(name, tail)], context).advance()

    return Middleware(name, execute)


def stage_specific_middleware(
    stages: Iterable[str], middleware: Middleware, *, match: str = "from"
) -> Middleware:
    """Apply ``middleware`` only to transitions leaving (``from``), entering
    (``to``) or staying within (``both``) ``stages``."""
    names = frozenset(stages)
    matchers = {
        "from": lambda ctx: ctx.from_stage in names,
        "to": lambda ctx: ctx.to_stage in names,
        "both": lambda ctx: ctx.from_stage in names and ctx.to_stage in names,
    }
    if match not in matchers:
        raise ValueError(f"match must be one of: {', '.join(matchers)}")
    return conditional_middleware(matchers[match], middleware)


def event_specific_middleware(events: Iterable[str], middleware: Middleware) -> Middleware:
    """Apply ``middleware`` only to transitions fired by one of ``events``."""
    names = frozenset(events)
    return conditional_middleware(lambda ctx: ctx.event in names, middleware)


def retry_middleware(
    *,
    max_retries: int,
    retry_delay: float = 1000.0,
    should_retry: Optional[Callable[[BaseException, TransitionContext], bool]] = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> Middleware:
    """Replay everything downstream of this middleware when it fails.

    ``retry_delay`` is in milliseconds. ``should_retry`` sees the error the
    failing middleware raised, not its ``MiddlewareError`` wrapper. A
    cancelled or redirected-to-nowhere transition is never retried.
    """

    async def execute(context: TransitionContext, next_: Any) -> None:
        attempts = 0
        while True:
            try:
                if attempts == 0:
                    await next_()
                else:
                    await next_(next_.position)
                return
            except TransitionError:
                raise
            except Exception as e:
                error: BaseException = e
                if isinstance(e, MiddlewareError) and e.cause is not None:
                    error = e.cause
                attempts += 1
                if attempts > max_retries or (
                    should_retry is not None and not should_retry(error, context)
                ):
                    raise

            if retry_delay > 0:
                await sleep(retry_delay / 1000.0)

    return Middleware("retry-middleware", execute)


def cache_middleware(
    *,
    key: Optional[KeyFn] = None,
    ttl: float = 60000.0,
    now: Callable[[], float] = _monotonic_ms,
) -> Middleware:
    """Skip the rest of the chain for a key that completed within ``ttl`` ms.

    The transition itself still happens; only downstream middleware is skipped.
    """
    key_fn = key or (lambda ctx: f"{ctx.from_stage}-{ctx.to_stage}-{_event_label(ctx)}")
    completed: Dict[str, float] = {}

    async def execute(context: TransitionContext, next_: Any) -> None:
        k = key_fn(context)
        started = now()
        cached_at = completed.get(k)
        if cached_at is not None:
            if started - cached_at < ttl:
                return
            del completed[k]

        await next_()
        completed[k] = started

    return Middleware("cache-middleware", execute)
