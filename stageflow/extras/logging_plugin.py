from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..logger import get_logger
from ..plugins import Plugin


class LoggingPlugin(Plugin):
    """Logs transitions and stage enter/exit through the stdlib logger.

    Transition durations are measured on the engine's clock from
    ``before_transition`` to ``after_transition``.
    """

    name = "logging"
    version = "1.0.0"

    def __init__(
        self,
        *,
        level: int = logging.INFO,
        log_transitions: bool = True,
        log_stage_events: bool = True,
        include_data: bool = False,
        logger: Any = None,
    ) -> None:
        self.level = level
        self.log_transitions = log_transitions
        self.log_stage_events = log_stage_events
        self.include_data = include_data
        self.logger = logger or get_logger("stageflow.plugins.logging")
        self._engine: Any = None
        self._started_at: Dict[str, float] = {}

    @classmethod
    def for_development(cls, **kwargs: Any) -> "LoggingPlugin":
        return cls(**{"level": logging.DEBUG, "include_data": True, **kwargs})

    @classmethod
    def for_production(cls, **kwargs: Any) -> "LoggingPlugin":
        return cls(
            **{
                "level": logging.WARNING,
                "log_transitions": False,
                "log_stage_events": False,
                **kwargs,
            }
        )

    def _log(self, message: str, *args: Any, data: Any = None) -> None:
        if self.include_data:
            self.logger.log(self.level, message + " data=%r", *args, data)
        else:
            self.logger.log(self.level, message, *args)

    async def install(self, engine: Any) -> None:
        self._engine = engine
        self.logger.log(self.level, "Logging plugin installed in stage: %s", engine.get_current_stage())

    async def uninstall(self, engine: Any) -> None:
        self.logger.log(self.level, "Logging plugin uninstalled")
        self._engine = None
        self._started_at.clear()

    async def before_transition(self, context: Any) -> None:
        if not self.log_transitions:
            return
        self._started_at[f"{context.from_stage}->{context.to_stage}"] = context.timestamp
        self._log(
            "Transition starting: %s -> %s (event: %s)",
            context.from_stage,
            context.to_stage,
            context.event or "direct",
            data=context.data,
        )

    async def after_transition(self, context: Any) -> None:
        if not self.log_transitions:
            return
        started = self._started_at.pop(f"{context.from_stage}->{context.to_stage}", None)
        duration = self._duration_since(started)
        self._log(
            "Transition completed: %s -> %s (event: %s, duration: %s)",
            context.from_stage,
            context.to_stage,
            context.event or "direct",
            f"{duration:.0f}ms" if duration is not None else "unknown",
            data=context.data,
        )

    async def on_stage_enter(self, context: Any) -> None:
        if self.log_stage_events:
            self._log("Stage entered: %s", context.current, data=context.data)

    async def on_stage_exit(self, context: Any) -> None:
        if self.log_stage_events:
            self._log("Stage exited: %s", context.current, data=context.data)

    def _duration_since(self, started: Optional[float]) -> Optional[float]:
        if started is None or self._engine is None:
            return None
        return self._engine.clock.now() - started
