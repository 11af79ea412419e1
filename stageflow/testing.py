"""Deterministic helpers for testing flows without real time passing.

Example:
    clock = ManualClock()
    engine = StageFlowEngine(config, clock=clock)
    await engine.start()
    await clock.advance(100)   # fires every timer due within 100 ms
"""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .clock import AsyncCallback
from .plugins import Plugin


@dataclass(order=True)
class _ManualHandle:
    due: float
    seq: int
    callback: AsyncCallback = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """A Clock whose time only moves when ``advance`` is awaited.

    Due callbacks run in (due time, scheduling order) and are awaited inline,
    so when ``advance`` returns every fire it triggered has completed,
    including retries that became due within the same window.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._seq = itertools.count()
        self._queue: List[_ManualHandle] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: AsyncCallback) -> _ManualHandle:
        handle = _ManualHandle(self._now + max(0.0, delay_ms), next(self._seq), callback)
        heapq.heappush(self._queue, handle)
        return handle

    def _next_due(self, until: float) -> Optional[_ManualHandle]:
        while self._queue:
            head = self._queue[0]
            if head.cancelled:
                heapq.heappop(self._queue)
                continue
            if head.due > until:
                return None
            return heapq.heappop(self._queue)
        return None

    async def advance(self, ms: float) -> None:
        target = self._now + ms
        while True:
            handle = self._next_due(target)
            if handle is None:
                break
            self._now = max(self._now, handle.due)
            await handle.callback()
        self._now = target

    async def run_pending(self) -> None:
        """Fire whatever is already due without moving time."""
        await self.advance(0)

    def pending(self) -> int:
        return sum(1 for h in self._queue if not h.cancelled)


class RecordingPlugin(Plugin):
    """Plugin that records every install/uninstall and hook call it receives.

    ``calls`` is a list of ``(event, payload)`` tuples in call order; ``log``
    (optional) is a list shared between several recorders to assert ordering
    across plugins.
    """

    def __init__(
        self,
        name: str,
        *,
        dependencies: Sequence[str] = (),
        version: Optional[str] = None,
        state: Optional[Dict[str, Any]] = None,
        log: Optional[List[Tuple[str, str]]] = None,
        fail_on: Sequence[str] = (),
    ) -> None:
        self.name = name
        self.dependencies = tuple(dependencies)
        self.version = version
        self.state = state
        self.calls: List[Tuple[str, Any]] = []
        self.log = log if log is not None else []
        self.fail_on = set(fail_on)

    def _record(self, event: str, payload: Any) -> None:
        self.calls.append((event, payload))
        self.log.append((self.name, event))
        if event in self.fail_on:
            raise RuntimeError(f"{self.name} failed in {event}")

    async def install(self, engine: Any) -> None:
        self._record("install", engine)

    async def uninstall(self, engine: Any) -> None:
        self._record("uninstall", engine)

    async def before_transition(self, context: Any) -> None:
        self._record("before_transition", context)

    async def after_transition(self, context: Any) -> None:
        self._record("after_transition", context)

    async def on_stage_enter(self, context: Any) -> None:
        self._record("on_stage_enter", context)

    async def on_stage_exit(self, context: Any) -> None:
        self._record("on_stage_exit", context)

    def events(self) -> List[str]:
        return [event for event, _ in self.calls]

    def hook_calls(self, hook_name: str) -> List[Any]:
        return [payload for event, payload in self.calls if event == hook_name]
