"""The public engine: composes the registry, resolver, middleware pipeline,
timer scheduler, plugin host and lifecycle coordinator.

Transition order, once the guard condition passed:

    middleware -> before_transition -> on_stage_exit -> stage.on_exit
    -> timer teardown -> commit (+history) -> stage.on_enter
    -> on_stage_enter -> after_transition -> arm timers -> notify

``is_transitioning`` is set before the first await and always cleared in a
``finally``; a second send()/go_to() in the meantime is rejected, not queued.
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional, Tuple

from .awaitables import call_maybe_async
from .clock import AsyncioClock, Clock
from .config import FlowConfig
from .context import StageContext, TransitionContext
from .errors import (
    ConfigurationError,
    PluginError,
    engine_not_started,
    invalid_event,
    stage_not_found,
    transition_in_progress,
)
from .flow_state import EngineState, FlowState, HistoryEntry
from .lifecycle import LifecycleCoordinator
from .logger import Diagnostics, get_logger
from .middleware import MiddlewarePipeline
from .plugins import PluginHost
from .resolver import TransitionResolver
from .retry import TIMER_RETRY, RetryConfig
from .stages import Stage, StageRegistry, Transition
from .subscribers import ListenerSet, SubscriptionHandle
from .timers import TimerEvent, TimerScheduler, TimerSnapshot
from .validation import validate_config_strict

Subscriber = Callable[[str, Any], Any]


class _TimerPort:
    """The part of the engine the timer scheduler may use."""

    def __init__(self, engine: "StageFlowEngine") -> None:
        self._engine = engine

    def is_started(self) -> bool:
        return self._engine.is_started()

    def current_stage(self) -> str:
        return self._engine._state.current

    def current_data(self) -> Any:
        return self._engine._state.data

    def is_transitioning(self) -> bool:
        return self._engine._state.is_transitioning

    def find_stage(self, name: str) -> Optional[Stage]:
        return self._engine.registry.find(name)

    async def run_timed_transition(self, transition: Transition) -> None:
        await self._engine._execute_transition(transition)


class _LifecyclePort:
    """The part of the engine the lifecycle coordinator may use."""

    def __init__(self, engine: "StageFlowEngine") -> None:
        self._engine = engine

    def stage_context(self) -> StageContext:
        return self._engine._stage_context()

    def notify_subscribers(self) -> None:
        self._engine._notify_subscribers()


class StageFlowEngine:
    def __init__(
        self,
        config: FlowConfig,
        *,
        clock: Optional[Clock] = None,
        logger: Any = None,
        diagnostics: Optional[Diagnostics] = None,
        timer_retry: RetryConfig = TIMER_RETRY,
        validate: bool = True,
    ) -> None:
        self.config = config
        self.logger = logger or get_logger("stageflow")
        self.diagnostics = diagnostics or Diagnostics(self.logger)

        if validate:
            validate_config_strict(config, self.diagnostics)

        self.clock: Clock = clock or AsyncioClock()
        self.registry = StageRegistry(config.stages)
        initial = self.registry.get(config.initial)
        self._state = FlowState.initial(initial.name, initial.data, self.clock.now())

        self._resolver = TransitionResolver(self.registry)
        self._pipeline = MiddlewarePipeline(config.middleware)
        self._subscribers = ListenerSet("subscriber", self.logger)
        self._timers = TimerScheduler(
            _TimerPort(self), self.clock, retry=timer_retry, logger=self.logger
        )
        self._plugins = PluginHost(self, is_running=self.is_started, logger=self.logger)
        try:
            self._plugins.register_all(config.plugins)
        except PluginError as e:
            raise ConfigurationError(
                e.what, why=e.why, fix=e.fix, context=e.context, cause=e
            ) from e

        self._lifecycle = LifecycleCoordinator(
            _LifecyclePort(self),
            registry=self.registry,
            state=self._state,
            timers=self._timers,
            plugins=self._plugins,
            clock=self.clock,
            initial_stage=initial.name,
            logger=self.logger,
        )

    # --- lifecycle ---

    def is_started(self) -> bool:
        return self._lifecycle.is_started

    async def start(self) -> None:
        await self._lifecycle.start()

    async def stop(self) -> None:
        await self._lifecycle.stop()

    async def reset(self) -> None:
        await self._lifecycle.reset()

    # --- guards ---

    def _require_started(self, operation: str) -> None:
        if not self.is_started():
            raise engine_not_started(operation)

    def _require_idle(self, operation: str) -> None:
        if self._state.is_transitioning:
            raise transition_in_progress(operation, self._state.current)

    def _stage_context(self) -> StageContext:
        return StageContext(
            current=self._state.current,
            data=self._state.data,
            timestamp=self.clock.now(),
            send=self.send,
            go_to=self.go_to,
        )

    # --- transitions ---

    async def send(self, event: str, data: Any = None) -> None:
        """Fire ``event`` from the current stage.

        An event with no matching transition is a no-op; a development
        warning is logged once per (stage, event) pair.
        """
        self._require_started("sending events")
        self._require_idle("send an event")
        if not isinstance(event, str) or not event.strip():
            raise invalid_event(event)

        transition = self._resolver.find_transition(self._state.current, event)
        if transition is None:
            self.diagnostics.warn_once(
                f"no-transition:{self._state.current}:{event}",
                "No transition found for event '%s' in stage '%s'",
                event,
                self._state.current,
            )
            return

        await self._execute_transition(transition, data, event)

    async def go_to(self, stage: str, data: Any = None) -> None:
        """Move straight to ``stage``.

        A declared transition to ``stage`` keeps its condition and middleware.
        Without one, an implicit transition is used that has neither.
        """
        self._require_started("navigation")
        self._require_idle("navigate")
        if not self.registry.has(stage):
            raise stage_not_found(stage, self.registry.names())

        if stage == self._state.current:
            if data is not None:
                self._state.set_data(data)
                self._notify_subscribers()
            return

        transition = self._resolver.find_transition(self._state.current, stage, is_direct=True)
        if transition is None:
            transition = self._resolver.direct_transition(stage)
        await self._execute_transition(transition, data)

    async def _execute_transition(
        self, transition: Transition, data: Any = None, event: Optional[str] = None
    ) -> None:
        self._state.begin_transition()
        try:
            await self._run_transition(transition, data, event)
        finally:
            self._state.end_transition()

    async def _run_transition(self, transition: Transition, data: Any, event: Optional[str]) -> None:
        from_name = self._state.current
        context = self._stage_context()

        if not await self._resolver.evaluate_condition(transition, context, event):
            self.logger.debug("Condition blocked transition %s -> %s", from_name, transition.target)
            return

        tctx = TransitionContext(
            from_stage=from_name,
            to_stage=transition.target,
            event=event,
            data=data,
            timestamp=self.clock.now(),
            stage_exists=self.registry.has,
            stage_names=self.registry.names,
        )
        await self._pipeline.run(tctx, transition.middleware)
        await self._plugins.execute_hooks("before_transition", tctx)

        from_stage = self.registry.get(from_name)
        to_stage = self.registry.get(tctx.to_stage)

        await self._plugins.execute_hooks("on_stage_exit", context)
        if from_stage.on_exit is not None:
            await call_maybe_async(from_stage.on_exit, context)

        self._timers.clear_stage(from_name)

        new_data = tctx.data if tctx.data is not None else to_stage.data
        self._state.commit(to_stage.name, new_data, self.clock.now())
        self.logger.info("Transitioned %s -> %s", from_name, to_stage.name)

        entered = self._stage_context()
        if to_stage.on_enter is not None:
            await call_maybe_async(to_stage.on_enter, entered)
        await self._plugins.execute_hooks("on_stage_enter", entered)
        await self._plugins.execute_hooks("after_transition", tctx)

        if self.is_started():
            self._timers.arm(to_stage)
        self._notify_subscribers()

    def set_stage_data(self, data: Any) -> None:
        self._require_started("setting stage data")
        self._require_idle("set stage data")
        self._state.set_data(data)
        self._notify_subscribers()

    # --- subscribers ---

    def subscribe(self, callback: Subscriber) -> SubscriptionHandle:
        """Register ``callback(stage, data)``; call the returned handle to unsubscribe."""
        return self._subscribers.subscribe(callback)

    def _notify_subscribers(self) -> None:
        self._subscribers.notify(self._state.current, self._state.data)

    # --- middleware ---

    def add_middleware(self, middleware: Any) -> None:
        self._pipeline.add(middleware)

    def remove_middleware(self, name: str) -> None:
        self._pipeline.remove(name)

    # --- plugins ---

    async def install_plugin(self, plugin: Any) -> None:
        await self._plugins.install(plugin)

    async def uninstall_plugin(self, name: str) -> None:
        await self._plugins.uninstall(name)

    def get_installed_plugins(self) -> List[str]:
        return self._plugins.names()

    def get_plugin(self, name: str) -> Optional[Any]:
        return self._plugins.get(name)

    def get_plugin_state(self, name: str) -> Optional[dict]:
        return self._plugins.get_state(name)

    def set_plugin_state(self, name: str, state: dict) -> None:
        self._plugins.set_state(name, state)

    # --- timers (current stage) ---

    def pause_timers(self) -> None:
        self._timers.pause(self._state.current)

    def resume_timers(self) -> None:
        self._timers.resume(self._state.current)

    def reset_timers(self) -> None:
        self._timers.reset(self.registry.get(self._state.current))

    def get_timer_remaining_time(self) -> float:
        return self._timers.remaining_time(self._state.current)

    def are_timers_paused(self) -> bool:
        return self._timers.are_paused(self._state.current)

    def cancel_timer(self, timer_id: str) -> bool:
        return self._timers.cancel(timer_id)

    def get_active_timers(self) -> List[TimerSnapshot]:
        return self._timers.active_timers()

    def get_stage_timers(self, stage: Optional[str] = None) -> List[TimerSnapshot]:
        return self._timers.stage_timers(stage or self._state.current)

    def subscribe_to_timer_events(self, listener: Callable[[TimerEvent], Any]) -> SubscriptionHandle:
        return self._timers.subscribe(listener)

    def serialize_timer_state(self) -> str:
        return self._timers.serialize()

    def restore_timer_state(self, serialized: str) -> bool:
        return self._timers.restore(serialized, self._state.current)

    # --- effects ---

    def get_current_stage_effect(self) -> Optional[str]:
        return self.registry.get(self._state.current).effect

    def get_stage_effect(self, stage: str) -> Optional[str]:
        found = self.registry.find(stage)
        return found.effect if found is not None else None

    def resolve_effect(self, name: Optional[str]) -> Any:
        """Look up an effect definition by name; the engine never interprets it."""
        if not name:
            return None
        return self.config.effects.get(name)

    # --- state ---

    def get_current_stage(self) -> str:
        return self._state.current

    def get_current_data(self) -> Any:
        return self._state.data

    def get_history(self) -> Tuple[HistoryEntry, ...]:
        return tuple(self._state.history)

    def get_state(self) -> EngineState:
        return EngineState(
            current=self._state.current,
            data=self._state.data,
            is_transitioning=self._state.is_transitioning,
            history=tuple(self._state.history),
            plugin_state=self._plugins.all_state(),
            middleware=tuple(self._pipeline.names()),
        )

    def __repr__(self) -> str:
        status = "running" if self.is_started() else "idle"
        return f"<StageFlowEngine {status} stage={self._state.current!r}>"
