"""Retry-with-backoff around engine operations, with an optional fallback stage.

Example:
    manager = ErrorRecoveryManager(engine, RecoveryConfig(fallback_stage="error"))
    await manager.transition_with_retry(lambda: engine.send("submit"), "submit")
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..awaitables import call_maybe_async
from ..errors import ConfigurationError, ErrorContext, StageFlowError
from ..logger import get_logger
from ..plugins import Plugin
from ..retry import RetryConfig

T = TypeVar("T")


class OperationError(StageFlowError):
    """A non-framework exception raised by an operation run under recovery."""

    code = "OPERATION_ERROR"


def _default_should_retry(error: StageFlowError, attempt: int) -> bool:
    return not isinstance(error, ConfigurationError)


@dataclass(frozen=True)
class RecoveryConfig:
    """How ``ErrorRecoveryManager`` retries.

    ``retry`` supplies attempts and the backoff table (ms). ``max_retry_time``
    bounds the whole loop in ms. Callbacks receive the wrapped
    ``StageFlowError``.
    """

    retry: RetryConfig = RetryConfig(max_attempts=3, base_delay=1000.0, max_delay=10000.0, backoff=2.0)
    max_retry_time: float = 30000.0
    fallback_stage: Optional[str] = None
    should_retry: Callable[[StageFlowError, int], bool] = _default_should_retry
    on_retry: Optional[Callable[[StageFlowError, int, float], Any]] = None
    on_retry_exhausted: Optional[Callable[[StageFlowError, int], Any]] = None
    on_error: Optional[Callable[[StageFlowError], Any]] = None


class ErrorRecoveryManager:
    def __init__(
        self,
        engine: Any = None,
        config: Optional[RecoveryConfig] = None,
        *,
        logger: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], float] = lambda: time.monotonic() * 1000.0,
    ) -> None:
        self.engine = engine
        self.config = config or RecoveryConfig()
        self.config.retry.validate()
        self._logger = logger or get_logger("stageflow")
        self._sleep = sleep
        self._now = now

    def _wrap(self, error: Exception, operation_name: str, attempt: int) -> StageFlowError:
        if isinstance(error, StageFlowError):
            return error
        ctx = ErrorContext().add("operation", operation_name).add("attempt", attempt)
        return OperationError(
            f"{operation_name} failed: {str(error) or type(error).__name__}",
            why=f"{type(error).__name__} raised while running the operation.",
            fix="Check the cause; the operation is retried while the policy allows it.",
            context=ctx,
            cause=error,
        )

    async def execute_with_retry(
        self, operation: Callable[[], Awaitable[T]], operation_name: str = "operation"
    ) -> T:
        """Await ``operation()`` until it succeeds or the policy gives up.

        On giving up the engine moves to ``fallback_stage`` (when configured
        and an engine is attached), then the last error is raised.
        """
        cfg = self.config
        started = self._now()
        attempt = 0
        last_error: Optional[StageFlowError] = None

        while attempt < cfg.retry.max_attempts:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                last_error = self._wrap(e, operation_name, attempt)

            if attempt >= cfg.retry.max_attempts or not cfg.should_retry(last_error, attempt):
                break
            if self._now() - started >= cfg.max_retry_time:
                break

            delay = cfg.retry.delay_for(attempt - 1)
            if cfg.on_retry is not None:
                await call_maybe_async(cfg.on_retry, last_error, attempt, delay)
            self._logger.warning(
                "Retrying %s after error (attempt %d): %s; delay %.0fms",
                operation_name,
                attempt,
                last_error.what,
                delay,
            )
            if delay > 0:
                await self._sleep(delay / 1000.0)

        self._logger.error(
            "All retry attempts exhausted for %s (%d attempts): %s",
            operation_name,
            attempt,
            last_error.what,
        )
        if cfg.on_retry_exhausted is not None:
            await call_maybe_async(cfg.on_retry_exhausted, last_error, attempt)
        if cfg.on_error is not None:
            await call_maybe_async(cfg.on_error, last_error)

        await self._go_to_fallback(operation_name)
        raise last_error

    async def _go_to_fallback(self, operation_name: str) -> None:
        stage = self.config.fallback_stage
        if not stage or self.engine is None:
            return
        try:
            await self.engine.go_to(stage)
        except StageFlowError as e:
            self._logger.error("Fallback to stage '%s' failed: %s", stage, e.what)
            return
        self._logger.info("%s gave up; moved to fallback stage: %s", operation_name, stage)

    async def transition_with_retry(
        self, transition: Callable[[], Awaitable[Any]], name: str = "transition"
    ) -> Any:
        return await self.execute_with_retry(transition, f"Stage {name}")

    async def install_plugin_with_retry(self, plugin: Any) -> None:
        await self.execute_with_retry(
            lambda: self.engine.install_plugin(plugin),
            f"Plugin installation ({getattr(plugin, 'name', plugin)})",
        )

    def update_config(self, **changes: Any) -> None:
        self.config = replace(self.config, **changes)
        self.config.retry.validate()


class ErrorRecoveryPlugin(Plugin):
    """Attaches an ``ErrorRecoveryManager`` to the engine it is installed on."""

    name = "error-recovery"
    version = "1.0.0"

    def __init__(self, config: Optional[RecoveryConfig] = None, **manager_options: Any) -> None:
        self.config = config or RecoveryConfig()
        self._manager_options = manager_options
        self.manager: Optional[ErrorRecoveryManager] = None

    async def install(self, engine: Any) -> None:
        self.manager = ErrorRecoveryManager(engine, self.config, **self._manager_options)
        engine.set_plugin_state(
            self.name,
            {
                "fallback_stage": self.config.fallback_stage,
                "max_attempts": self.config.retry.max_attempts,
            },
        )

    async def uninstall(self, engine: Any) -> None:
        self.manager = None


async def with_error_recovery(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RecoveryConfig] = None,
    operation_name: str = "operation",
    **manager_options: Any,
) -> T:
    """Run ``operation`` under a one-off manager with no engine (so no fallback)."""
    manager = ErrorRecoveryManager(None, config, **manager_options)
    return await manager.execute_with_retry(operation, operation_name)
