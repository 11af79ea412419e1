"""Time source and callback scheduling used by the timer scheduler."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

AsyncCallback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Milliseconds in, milliseconds out."""

    def now(self) -> float: ...

    def call_later(self, delay_ms: float, callback: AsyncCallback) -> TimerHandle: ...


class _LoopHandle:
    __slots__ = ("_handle",)

    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    def cancel(self) -> None:
        # Only the pending callback is cancelled; a fire that already started
        # runs to completion.
        self._handle.cancel()


class AsyncioClock:
    """Wall-clock time and ``loop.call_later`` on the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def now(self) -> float:
        return time.time() * 1000.0

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def call_later(self, delay_ms: float, callback: AsyncCallback) -> TimerHandle:
        loop = self._get_loop()
        handle = loop.call_later(max(0.0, delay_ms) / 1000.0, self._spawn, loop, callback)
        return _LoopHandle(handle)

    def _spawn(self, loop: asyncio.AbstractEventLoop, callback: AsyncCallback) -> None:
        task = loop.create_task(callback())
        # Keep a strong reference until the task finishes.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
