from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Union

from .errors import stage_not_found

Condition = Callable[[Any], Union[bool, Awaitable[bool]]]
StageHook = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Transition:
    """Directed edge to ``target``, gated by an event, a condition and/or a delay.

    ``after`` is in milliseconds. ``middleware`` runs after the engine's global
    middleware for this transition only.
    """

    target: str
    event: Optional[str] = None
    after: Optional[float] = None
    condition: Optional[Condition] = None
    middleware: Sequence[Any] = ()

    @property
    def is_timed(self) -> bool:
        return self.after is not None and self.after > 0


@dataclass(frozen=True)
class Stage:
    name: str
    transitions: Sequence[Transition] = ()
    data: Any = None
    on_enter: Optional[StageHook] = None
    on_exit: Optional[StageHook] = None
    effect: Optional[str] = None

    def timed_transitions(self) -> List[Transition]:
        """Timed transitions ordered by duration, then target name."""
        timed = [t for t in self.transitions if t.is_timed]
        return sorted(timed, key=lambda t: (t.after, t.target))


class StageRegistry:
    """Name -> Stage lookup, fixed once the engine is constructed."""

    def __init__(self, stages: Sequence[Stage] = ()) -> None:
        self._stages: Dict[str, Stage] = {}
        for stage in stages:
            self._stages[stage.name] = stage

    def get(self, name: str) -> Stage:
        stage = self._stages.get(name)
        if stage is None:
            raise stage_not_found(name, self.names())
        return stage

    def find(self, name: str) -> Optional[Stage]:
        return self._stages.get(name)

    def has(self, name: str) -> bool:
        return name in self._stages

    def names(self) -> list[str]:
        return list(self._stages.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages.values())

    def __len__(self) -> int:
        return len(self._stages)
