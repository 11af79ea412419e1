"""Analytics plugin: emits stage/transition events to handlers and keeps
duration statistics measured on the engine's clock.

Example:
    events = []
    analytics = AnalyticsPlugin(handlers=[events.append])
    engine = StageFlowEngine(FlowConfig(..., plugins=[analytics]))
    ...
    analytics.get_metrics()["total_transitions"]
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..awaitables import call_maybe_async
from ..logger import get_logger
from ..plugins import Plugin

STAGE_ENTER = "stage_enter"
STAGE_EXIT = "stage_exit"
TRANSITION_START = "transition_start"
TRANSITION_COMPLETE = "transition_complete"

EventHandler = Callable[["AnalyticsEvent"], Any]


@dataclass
class AnalyticsEvent:
    type: str
    timestamp: float
    stage: Optional[str] = None
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    event: Optional[str] = None
    data: Any = None
    metrics: Dict[str, float] = field(default_factory=dict)
    properties: Dict[str, Any] = field(default_factory=dict)


def _stats(durations: List[float]) -> Dict[str, float]:
    return {
        "min": min(durations),
        "max": max(durations),
        "avg": sum(durations) / len(durations),
        "count": len(durations),
    }


class AnalyticsPlugin(Plugin):
    name = "analytics"
    version = "1.0.0"

    def __init__(
        self,
        *,
        handlers: Optional[List[EventHandler]] = None,
        track_stage_events: bool = True,
        track_transitions: bool = True,
        track_durations: bool = True,
        global_properties: Optional[Dict[str, Any]] = None,
        batch_size: int = 0,
        logger: Any = None,
    ) -> None:
        self.handlers: List[EventHandler] = list(handlers or [])
        self.track_stage_events = track_stage_events
        self.track_transitions = track_transitions
        self.track_durations = track_durations
        self.global_properties = dict(global_properties or {})
        self.batch_size = batch_size
        self._logger = logger or get_logger("stageflow.plugins.analytics")
        self._engine: Any = None
        self._batch: List[AnalyticsEvent] = []
        self.reset_metrics()

    def reset_metrics(self) -> None:
        self.total_transitions = 0
        self._stage_entered_at: Optional[float] = None
        self._transition_started_at: Optional[float] = None
        self._stage_durations: Dict[str, List[float]] = defaultdict(list)
        self._transition_durations: Dict[str, List[float]] = defaultdict(list)

    def _now(self) -> float:
        return self._engine.clock.now()

    # --- plugin lifecycle ---

    async def install(self, engine: Any) -> None:
        self._engine = engine
        self._stage_entered_at = self._now()

    async def uninstall(self, engine: Any) -> None:
        await self.flush()
        self._engine = None

    # --- hooks ---

    async def before_transition(self, context: Any) -> None:
        if not self.track_transitions:
            return
        self._transition_started_at = self._now()
        await self._emit(
            AnalyticsEvent(
                TRANSITION_START,
                context.timestamp,
                from_stage=context.from_stage,
                to_stage=context.to_stage,
                event=context.event,
                data=context.data,
            )
        )

    async def after_transition(self, context: Any) -> None:
        if not self.track_transitions:
            return
        self.total_transitions += 1
        metrics: Dict[str, float] = {}
        if self._transition_started_at is not None:
            duration = self._now() - self._transition_started_at
            metrics["duration"] = duration
            if self.track_durations:
                self._transition_durations[f"{context.from_stage}->{context.to_stage}"].append(duration)
        self._transition_started_at = None

        await self._emit(
            AnalyticsEvent(
                TRANSITION_COMPLETE,
                context.timestamp,
                from_stage=context.from_stage,
                to_stage=context.to_stage,
                event=context.event,
                data=context.data,
                metrics=metrics,
            )
        )

    async def on_stage_enter(self, context: Any) -> None:
        self._stage_entered_at = self._now()
        if self.track_stage_events:
            await self._emit(
                AnalyticsEvent(STAGE_ENTER, context.timestamp, stage=context.current, data=context.data)
            )

    async def on_stage_exit(self, context: Any) -> None:
        metrics: Dict[str, float] = {}
        if self._stage_entered_at is not None:
            duration = self._now() - self._stage_entered_at
            metrics["stage_duration"] = duration
            if self.track_durations:
                self._stage_durations[context.current].append(duration)

        if self.track_stage_events:
            await self._emit(
                AnalyticsEvent(
                    STAGE_EXIT,
                    context.timestamp,
                    stage=context.current,
                    data=context.data,
                    metrics=metrics,
                )
            )

    # --- events ---

    def add_handler(self, handler: EventHandler) -> None:
        self.handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    async def emit_custom_event(self, type_: str, **fields: Any) -> None:
        timestamp = fields.pop("timestamp", None)
        if timestamp is None:
            timestamp = self._now() if self._engine is not None else 0.0
        await self._emit(AnalyticsEvent(type_, timestamp, **fields))

    async def _emit(self, event: AnalyticsEvent) -> None:
        if self.global_properties:
            event.properties = {**self.global_properties, **event.properties}
        if self.batch_size > 0:
            self._batch.append(event)
            if len(self._batch) >= self.batch_size:
                await self.flush()
            return
        await self._deliver(event)

    async def flush(self) -> None:
        """Deliver any batched events now."""
        pending, self._batch = self._batch, []
        for event in pending:
            await self._deliver(event)

    async def _deliver(self, event: AnalyticsEvent) -> None:
        for handler in list(self.handlers):
            try:
                await call_maybe_async(handler, event)
            except Exception as e:
                self._logger.warning("Analytics handler failed for %s: %s", event.type, e)

    # --- metrics ---

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "total_transitions": self.total_transitions,
            "stage_durations": {
                stage: _stats(values) for stage, values in self._stage_durations.items() if values
            },
            "transition_durations": {
                key: _stats(values) for key, values in self._transition_durations.items() if values
            },
        }
