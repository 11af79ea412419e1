"""Narrow interfaces each component is allowed to call on the engine.

Components receive one of these at construction instead of the engine itself,
so the timer scheduler, for instance, can only read the guard state and ask
for a transition, never reach into the plugin host or the flow state.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .context import StageContext
from .stages import Stage, Transition


class TransitionPort(Protocol):
    """What the timer scheduler sees."""

    def is_started(self) -> bool: ...

    def current_stage(self) -> str: ...

    def current_data(self) -> Any: ...

    def is_transitioning(self) -> bool: ...

    def find_stage(self, name: str) -> Optional[Stage]: ...

    async def run_timed_transition(self, transition: Transition) -> None: ...


class LifecyclePort(Protocol):
    """What the lifecycle coordinator sees."""

    def stage_context(self) -> StageContext: ...

    def notify_subscribers(self) -> None: ...
