from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .errors import transition_in_progress


@dataclass(frozen=True)
class HistoryEntry:
    stage: str
    timestamp: float
    data: Any = None


@dataclass
class FlowState:
    """The single mutable record of where the flow is.

    ``is_transitioning`` is the only concurrency guard in the engine: it is set
    before the first await of a transition and cleared in a ``finally``.
    """

    current: str
    data: Any = None
    is_transitioning: bool = False
    history: List[HistoryEntry] = field(default_factory=list)

    @classmethod
    def initial(cls, stage: str, data: Any, timestamp: float) -> "FlowState":
        return cls(current=stage, data=data, history=[HistoryEntry(stage, timestamp, data)])

    def begin_transition(self, operation: str = "transition") -> None:
        if self.is_transitioning:
            raise transition_in_progress(operation, self.current)
        self.is_transitioning = True

    def end_transition(self) -> None:
        self.is_transitioning = False

    def commit(self, stage: str, data: Any, timestamp: float) -> None:
        self.current = stage
        self.data = data
        self.history.append(HistoryEntry(stage, timestamp, data))

    def set_data(self, data: Any) -> None:
        self.data = data

    def reset(self, stage: str, data: Any, timestamp: float) -> None:
        self.current = stage
        self.data = data
        self.is_transitioning = False
        self.history = [HistoryEntry(stage, timestamp, data)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "data": self.data,
            "is_transitioning": self.is_transitioning,
            "history": [
                {"stage": h.stage, "timestamp": h.timestamp, "data": h.data}
                for h in self.history
            ],
        }


@dataclass(frozen=True)
class EngineState:
    """Read-only snapshot returned by ``StageFlowEngine.get_state()``."""

    current: str
    data: Any
    is_transitioning: bool
    history: Tuple[HistoryEntry, ...]
    plugin_state: Dict[str, Dict[str, Any]]
    middleware: Tuple[str, ...]
