"""stageflow error types with structured, actionable messages.

Error Contract:
Every user-facing error includes:
- What happened (one sentence, plain English)
- Why (root cause, not stack trace)
- Fix (specific, actionable)
- Context (relevant keys, trimmed)

Each error also carries a machine-readable ``code`` and, where one exists,
the underlying ``cause`` so callers can branch programmatically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional


@dataclass
class ErrorContext:
    """Structured context for error messages."""

    items: Dict[str, Any] = field(default_factory=dict)

    def add(self, key: str, value: Any) -> "ErrorContext":
        """Add a context item, returning self for chaining."""
        self.items[key] = value
        return self

    def get(self, key: str, default: Any = None) -> Any:
        return self.items.get(key, default)

    def format(self) -> str:
        """Format context as indented key=value lines."""
        if not self.items:
            return ""
        lines = [f"  {k}={v!r}" for k, v in self.items.items()]
        return "\n".join(lines)


class StageFlowError(Exception):
    """Base exception for stageflow with structured error messages.

    Attributes:
        what: One-sentence description of what happened
        why: Root cause explanation
        fix: Actionable fix suggestion
        context: Relevant debugging context
        cause: The exception that triggered this one, if any
    """

    code = "STAGE_FLOW_ERROR"

    def __init__(
        self,
        what: str,
        *,
        why: Optional[str] = None,
        fix: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
    ):
        self.what = what
        self.why = why
        self.fix = fix
        self.context = context or ErrorContext()
        self.cause = cause

        message = self._format_message()
        super().__init__(message)

    def _format_message(self) -> str:
        lines = [self.what]

        if self.why:
            lines.append(f"\nWhy: {self.why}")

        if self.fix:
            lines.append(f"\nFix: {self.fix}")

        ctx = self.context.format()
        if ctx:
            lines.append(f"\nContext:\n{ctx}")

        return "".join(lines)


class ConfigurationError(StageFlowError):
    """Bad static configuration; fatal at engine construction."""

    code = "CONFIGURATION_ERROR"


class TransitionError(StageFlowError):
    """A transition was rejected, cancelled or failed its guard."""

    code = "TRANSITION_ERROR"


class MiddlewareError(StageFlowError):
    """Unexpected exception raised inside a middleware."""

    code = "MIDDLEWARE_ERROR"


class PluginError(StageFlowError):
    """Plugin install/uninstall failure, bad dependencies or a failing hook."""

    code = "PLUGIN_ERROR"


class PersistenceError(StageFlowError):
    """Error loading or saving persisted state."""

    code = "PERSISTENCE_ERROR"


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _shortlist(names: Iterable[str], limit: int = 5) -> str:
    names = list(names)
    shown = ", ".join(names[:limit])
    if len(names) > limit:
        shown += f" (+{len(names) - limit} more)"
    return shown


# --- Configuration errors ---


def config_missing_field(field: str, path: Optional[str] = None) -> ConfigurationError:
    """Config is missing a required field."""
    ctx = ErrorContext()
    if path:
        ctx.add("config_path", path)
    ctx.add("field", field)

    return ConfigurationError(
        f"Config missing required field: '{field}'",
        why=f"The '{field}' field is required but was not found in the config.",
        fix=f"Add '{field}' to your config.",
        context=ctx,
    )


def config_wrong_type(
    field: str, expected: str, got: str, path: Optional[str] = None
) -> ConfigurationError:
    """Config field has wrong type."""
    ctx = ErrorContext()
    if path:
        ctx.add("config_path", path)
    ctx.add("field", field)
    ctx.add("expected", expected)
    ctx.add("got", got)

    return ConfigurationError(
        f"Config field '{field}' has wrong type",
        why=f"Expected {expected}, but got {got}.",
        fix=f"Change '{field}' to be a {expected}.",
        context=ctx,
    )


def config_invalid(errors: Iterable[str]) -> ConfigurationError:
    """Validation found one or more errors in a flow configuration."""
    errors = list(errors)
    ctx = ErrorContext().add("errors", errors)

    return ConfigurationError(
        f"Invalid stage flow configuration: {errors[0]}"
        + (f" (+{len(errors) - 1} more)" if len(errors) > 1 else ""),
        why="The configuration failed validation before the engine accepted it.",
        fix="Correct every listed error; validate_config() reports them all at once.",
        context=ctx,
    )


def stage_not_found(name: str, valid_stages: list) -> TransitionError:
    """Stage name is not declared in the configuration."""
    ctx = ErrorContext()
    ctx.add("requested_stage", name)
    ctx.add("valid_stages", valid_stages[:5])

    return TransitionError(
        f"Unknown stage: '{name}'",
        why="The requested stage is not declared in the flow configuration.",
        fix=f"Use one of the declared stages: {_shortlist(valid_stages)}",
        context=ctx,
    )


# --- Transition errors ---


def engine_not_started(operation: str) -> TransitionError:
    """An operation that needs a running engine was called while idle."""
    return TransitionError(
        f"Engine must be started before {operation}",
        why="The engine is idle; transitions only run between start() and stop().",
        fix="Await engine.start() first.",
        context=ErrorContext().add("operation", operation),
    )


def transition_in_progress(operation: str, current: str) -> TransitionError:
    """A second mutation was attempted while a transition is in flight."""
    ctx = ErrorContext().add("operation", operation).add("current_stage", current)

    return TransitionError(
        f"Cannot {operation} while a transition is in progress",
        why="Concurrent transitions are rejected, not queued.",
        fix="Await each send()/go_to() before issuing the next one.",
        context=ctx,
    )


def invalid_event(event: Any) -> TransitionError:
    return TransitionError(
        "Event must be a non-empty string",
        why=f"Got {event!r}.",
        fix="Pass the event name declared on a transition, e.g. engine.send('submit').",
        context=ErrorContext().add("event", event),
    )


def condition_failed(transition: Any, event: Optional[str], error: BaseException) -> TransitionError:
    """A transition condition raised instead of returning a boolean."""
    ctx = ErrorContext()
    ctx.add("transition", transition)
    ctx.add("event", event)
    ctx.add("cause", error)

    return TransitionError(
        f"Condition evaluation failed: {_describe(error)}",
        why="The transition's condition raised an exception.",
        fix="Make the condition return True/False instead of raising.",
        context=ctx,
        cause=error,
    )


def transition_cancelled(from_stage: str, to_stage: str, event: Optional[str]) -> TransitionError:
    ctx = ErrorContext().add("from", from_stage).add("to", to_stage).add("event", event)
    return TransitionError("Transition cancelled", context=ctx)


def modified_target_not_found(name: str, valid_stages: list) -> TransitionError:
    ctx = ErrorContext().add("requested_stage", name).add("valid_stages", valid_stages[:5])

    return TransitionError(
        f"Modified target stage '{name}' does not exist",
        why="context.modify() was given a stage that is not declared.",
        fix=f"Use one of the declared stages: {_shortlist(valid_stages)}",
        context=ctx,
    )


# --- Middleware errors ---


def middleware_failed(name: str, context: Any, error: BaseException) -> MiddlewareError:
    """A middleware raised a non-framework exception."""
    ctx = ErrorContext()
    ctx.add("middleware", name)
    ctx.add("transition", context)
    ctx.add("cause", error)

    return MiddlewareError(
        f"Middleware '{name}' failed: {_describe(error)}",
        why="An unexpected exception escaped the middleware's execute().",
        fix="Handle the error inside the middleware, or call context.cancel() to abort cleanly.",
        context=ctx,
        cause=error,
    )


def middleware_unnamed() -> MiddlewareError:
    return MiddlewareError(
        "Middleware must have a name",
        fix="Give every middleware a unique, non-empty name.",
    )


def middleware_duplicate(name: str) -> MiddlewareError:
    return MiddlewareError(
        f"Middleware '{name}' is already registered",
        why="Middleware names are unique within a pipeline.",
        fix="Remove the existing middleware first or pick another name.",
        context=ErrorContext().add("middleware", name),
    )


def middleware_not_registered(name: str) -> MiddlewareError:
    return MiddlewareError(
        f"Middleware '{name}' is not registered",
        context=ErrorContext().add("middleware", name),
    )


# --- Plugin errors ---


def plugin_unnamed() -> PluginError:
    return PluginError(
        "Plugin must have a name",
        fix="Set a unique, non-empty 'name' attribute on the plugin.",
    )


def plugin_duplicate(name: str) -> PluginError:
    return PluginError(
        f"Plugin '{name}' is already installed",
        context=ErrorContext().add("plugin", name),
    )


def plugin_not_installed(name: str) -> PluginError:
    return PluginError(
        f"Plugin '{name}' is not installed",
        context=ErrorContext().add("plugin", name),
    )


def plugin_dependency_missing(name: str, dependency: str) -> PluginError:
    ctx = ErrorContext().add("plugin", name).add("dependency", dependency)

    return PluginError(
        f"Plugin '{name}' requires dependency '{dependency}' which is not installed",
        why="Dependencies must be registered before the plugins that need them.",
        fix=f"Install '{dependency}' first.",
        context=ctx,
    )


def plugin_has_dependents(name: str, dependents: list) -> PluginError:
    ctx = ErrorContext().add("plugin", name).add("dependents", dependents)

    return PluginError(
        f"Cannot uninstall plugin '{name}' because it is required by: {', '.join(dependents)}",
        fix="Uninstall the dependent plugins first.",
        context=ctx,
    )


def plugin_cycle(name: str, path: list) -> PluginError:
    ctx = ErrorContext().add("plugin", name).add("cycle", path)

    return PluginError(
        f"Circular dependency detected involving plugin '{name}'",
        why=f"Dependency chain loops back on itself: {' -> '.join(path)}",
        fix="Break the cycle by removing one of the declared dependencies.",
        context=ctx,
    )


def plugin_operation_failed(name: str, operation: str, error: BaseException) -> PluginError:
    ctx = ErrorContext().add("plugin", name).add("operation", operation).add("cause", error)

    return PluginError(
        f"Failed to {operation} plugin '{name}': {_describe(error)}",
        context=ctx,
        cause=error,
    )


def plugin_hook_failed(name: str, hook: str, error: BaseException) -> PluginError:
    ctx = ErrorContext().add("plugin", name).add("hook", hook).add("cause", error)

    return PluginError(
        f"Plugin '{name}' hook '{hook}' failed: {_describe(error)}",
        context=ctx,
        cause=error,
    )


# --- Import errors (dotted paths in YAML configs) ---


def import_invalid_format(dotted_path: str) -> ConfigurationError:
    """Dotted path has invalid format."""
    ctx = ErrorContext()
    ctx.add("dotted_path", dotted_path)

    return ConfigurationError(
        f"Invalid dotted path format: '{dotted_path}'",
        why="Dotted paths must be in 'module:symbol' format.",
        fix="Use the format 'mypackage.module:my_function' (colon separates module from symbol).",
        context=ctx,
    )


def import_module_not_found(module: str, dotted_path: str) -> ConfigurationError:
    """Module in dotted path not found."""
    ctx = ErrorContext()
    ctx.add("module", module)
    ctx.add("dotted_path", dotted_path)

    return ConfigurationError(
        f"Module not found: '{module}'",
        why="The module specified in the dotted path could not be imported.",
        fix="Check that the module exists and is on your Python path.",
        context=ctx,
    )


def import_symbol_not_found(module: str, symbol: str, dotted_path: str) -> ConfigurationError:
    """Symbol not found in module."""
    ctx = ErrorContext()
    ctx.add("module", module)
    ctx.add("symbol", symbol)
    ctx.add("dotted_path", dotted_path)

    return ConfigurationError(
        f"Symbol '{symbol}' not found in module '{module}'",
        why="The module was imported successfully, but doesn't contain that symbol.",
        fix="Check the spelling and make sure it's defined at the top level of the module.",
        context=ctx,
    )


# --- Persistence errors ---


def persistence_invalid_json(key: str, error: str) -> PersistenceError:
    """Persisted payload contains invalid JSON."""
    ctx = ErrorContext()
    ctx.add("key", key)
    ctx.add("error", error)

    return PersistenceError(
        f"Invalid JSON in persisted state: {key}",
        why="The stored payload exists but contains malformed JSON.",
        fix="Clear the stored state to start fresh.",
        context=ctx,
    )


def persistence_missing_field(key: str, field: str) -> PersistenceError:
    """Persisted payload is missing a required field."""
    ctx = ErrorContext()
    ctx.add("key", key)
    ctx.add("field", field)

    return PersistenceError(
        f"Persisted state missing required field: '{field}'",
        why=f"The stored payload exists but is missing the '{field}' field.",
        fix="This may indicate corrupted storage. Clear it to start fresh.",
        context=ctx,
    )
