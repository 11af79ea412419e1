"""Helpers for user callables that may be plain functions or coroutines."""

from __future__ import annotations

import inspect
from typing import Any, Callable


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def call_maybe_async(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable."""
    return await maybe_await(fn(*args, **kwargs))
