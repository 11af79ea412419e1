from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .errors import modified_target_not_found, transition_cancelled

SendFn = Callable[..., Awaitable[None]]


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass
class StageContext:
    """Snapshot handed to conditions and stage hooks.

    ``send`` and ``go_to`` are bound to the engine so hooks can re-enter it.
    """

    current: str
    data: Any
    timestamp: float
    send: SendFn
    go_to: SendFn


@dataclass
class TransitionContext:
    """Mutable view of an in-flight transition, shared by middleware and plugin hooks."""

    from_stage: str
    to_stage: str
    event: Optional[str]
    data: Any
    timestamp: float
    stage_exists: Callable[[str], bool] = field(repr=False, default=lambda _name: True)
    stage_names: Callable[[], list] = field(repr=False, default=list)

    def cancel(self) -> None:
        """Abort the transition; the sentinel error propagates through the chain."""
        raise transition_cancelled(self.from_stage, self.to_stage, self.event)

    def modify(self, to: Optional[str] = None, data: Any = UNSET) -> None:
        """Rewrite the target and/or data; committed once all middleware ran."""
        if to is not None:
            if not self.stage_exists(to):
                raise modified_target_not_found(to, list(self.stage_names()))
            self.to_stage = to
        if data is not UNSET:
            self.data = data
