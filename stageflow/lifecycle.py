from __future__ import annotations

from typing import Any, Optional

from .awaitables import call_maybe_async
from .clock import Clock
from .context import StageContext
from .errors import transition_in_progress
from .flow_state import FlowState
from .logger import get_logger
from .plugins import PluginHost
from .ports import LifecyclePort
from .stages import Stage, StageHook, StageRegistry
from .timers import TimerScheduler


class LifecycleCoordinator:
    """Sequences start/stop/reset across the flow state, timers and plugins.

    Idle -> start() -> Running -> stop() -> Idle. Both transitions are
    idempotent. Stage hook failures during start/stop are logged, never raised.
    """

    def __init__(
        self,
        port: LifecyclePort,
        *,
        registry: StageRegistry,
        state: FlowState,
        timers: TimerScheduler,
        plugins: PluginHost,
        clock: Clock,
        initial_stage: str,
        logger: Any = None,
    ) -> None:
        self.port = port
        self.registry = registry
        self.state = state
        self.timers = timers
        self.plugins = plugins
        self.clock = clock
        self.initial_stage = initial_stage
        self._logger = logger or get_logger("stageflow")
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def _run_stage_hook(
        self, stage: Stage, hook_name: str, hook: Optional[StageHook], context: StageContext
    ) -> None:
        if hook is None:
            return
        try:
            await call_maybe_async(hook, context)
        except Exception as e:
            self._logger.error("Stage '%s' %s hook failed: %s", stage.name, hook_name, e)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True

        entered = self.state.current
        await self.plugins.install_all()

        # A plugin that restored persisted state during install has already
        # entered its stage through go_to().
        if self.state.current == entered:
            stage = self.registry.get(entered)
            context = self.port.stage_context()
            await self._run_stage_hook(stage, "on_enter", stage.on_enter, context)
            await self.plugins.execute_hooks("on_stage_enter", context)

        self.port.notify_subscribers()

        # A hook may have stopped the engine or moved it on already.
        if self._started:
            self.timers.ensure_armed(self.registry.get(self.state.current))
        self._logger.info("Engine started in stage: %s", self.state.current)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        self.timers.clear_all()

        stage = self.registry.get(self.state.current)
        context = self.port.stage_context()
        await self.plugins.execute_hooks("on_stage_exit", context)
        await self._run_stage_hook(stage, "on_exit", stage.on_exit, context)

        await self.plugins.uninstall_all()
        self._logger.info("Engine stopped in stage: %s", self.state.current)

    async def reset(self) -> None:
        """Stop, rewind to the initial stage with its configured data, and restart if running."""
        if self.state.is_transitioning:
            raise transition_in_progress("reset", self.state.current)

        was_started = self._started
        await self.stop()
        self.timers.clear_all()

        initial = self.registry.get(self.initial_stage)
        self.state.reset(initial.name, initial.data, self.clock.now())

        if was_started:
            await self.start()
