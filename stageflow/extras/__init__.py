"""Optional extras for stageflow."""

from .analytics import AnalyticsEvent, AnalyticsPlugin
from .logging_plugin import LoggingPlugin
from .middleware import (
    cache_middleware,
    compose_middleware,
    conditional_middleware,
    event_specific_middleware,
    logging_middleware,
    rate_limit_middleware,
    retry_middleware,
    stage_specific_middleware,
    timing_middleware,
    validation_middleware,
)
from .persistence import JsonFileStorage, MemoryStorage, PersistencePlugin, SqliteStorage
from .recovery import (
    ErrorRecoveryManager,
    ErrorRecoveryPlugin,
    OperationError,
    RecoveryConfig,
    with_error_recovery,
)

__all__ = [
    # Middleware
    "logging_middleware",
    "validation_middleware",
    "timing_middleware",
    "rate_limit_middleware",
    "conditional_middleware",
    "compose_middleware",
    "stage_specific_middleware",
    "event_specific_middleware",
    "retry_middleware",
    "cache_middleware",
    # Recovery
    "ErrorRecoveryManager",
    "ErrorRecoveryPlugin",
    "RecoveryConfig",
    "OperationError",
    "with_error_recovery",
    # Plugins
    "LoggingPlugin",
    "AnalyticsPlugin",
    "AnalyticsEvent",
    "PersistencePlugin",
    # Storage
    "MemoryStorage",
    "JsonFileStorage",
    "SqliteStorage",
]
