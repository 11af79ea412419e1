"""stageflow - a small async engine for stage-based flows.

Quick Start:
    from stageflow import FlowConfig, Stage, StageFlowEngine, Transition

    config = FlowConfig(
        initial="idle",
        stages=[
            Stage("idle", transitions=(Transition("loading", event="fetch"),)),
            Stage("loading", transitions=(Transition("idle", after=2000),)),
        ],
    )
    engine = StageFlowEngine(config)
    await engine.start()
    await engine.send("fetch")      # -> loading, back to idle after 2s

For config-driven usage:
    from stageflow import ConfigLoader, StageFlowEngine

    engine = StageFlowEngine(ConfigLoader.load_flow_config("flow.yaml"))
"""

from .config import FlowConfig, PersistenceConfig
from .config_loader import ConfigLoader
from .context import StageContext, TransitionContext
from .engine import StageFlowEngine
from .errors import (
    ConfigurationError,
    MiddlewareError,
    PersistenceError,
    PluginError,
    StageFlowError,
    TransitionError,
)
from .flow_state import EngineState, HistoryEntry
from .middleware import Middleware
from .plugins import Plugin
from .retry import RetryConfig, retry_async
from .stages import Stage, Transition
from .timers import TimerEvent, TimerSnapshot
from .validation import ValidationResult, validate_config
from .visualize import visualize

__all__ = [
    # Core
    "StageFlowEngine",
    "Stage",
    "Transition",
    "StageContext",
    "TransitionContext",
    "Middleware",
    "Plugin",
    # Config
    "FlowConfig",
    "PersistenceConfig",
    "ConfigLoader",
    "validate_config",
    "ValidationResult",
    # State and timers
    "EngineState",
    "HistoryEntry",
    "TimerEvent",
    "TimerSnapshot",
    "RetryConfig",
    "retry_async",
    # Errors
    "StageFlowError",
    "ConfigurationError",
    "TransitionError",
    "MiddlewareError",
    "PluginError",
    "PersistenceError",
    # Visualization
    "visualize",
]

# Available but not in __all__:
# - stageflow.testing: ManualClock, RecordingPlugin
# - stageflow.extras: built-in middleware, recovery and plugins
# - stageflow.api: create_app (needs the [api] extra)

__version__ = "0.1.0"
