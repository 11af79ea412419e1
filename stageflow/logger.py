from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Optional, Set

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")


def set_correlation_id(value: Optional[str] = None) -> str:
    """Set a correlation ID for the current context and return it."""
    cid = value or str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str:
    return _correlation_id.get()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get()
        return True


def get_logger(name: str = "stageflow", level: int = logging.INFO) -> logging.Logger:
    """Return a logger configured with a correlation-id filter and sane handler behavior."""
    logger = logging.getLogger(name)

    # Avoid duplicated handlers if called multiple times.
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - cid=%(correlation_id)s - %(message)s"
        )
        handler.setFormatter(formatter)
        handler.addFilter(CorrelationIdFilter())
        logger.addHandler(handler)

    logger.setLevel(level)
    return logger


class Diagnostics:
    """Engine-scoped sink for development warnings.

    Each distinct warning key is logged once per Diagnostics instance, so two
    engines in one process never suppress each other's warnings.
    """

    def __init__(self, logger: Any = None, enabled: bool = True) -> None:
        self.logger = logger or get_logger("stageflow")
        self.enabled = enabled
        self._seen: Set[str] = set()

    def warn_once(self, key: str, message: str, *args: Any) -> bool:
        """Log ``message`` at WARNING unless ``key`` was already reported.

        Returns True if the warning was emitted.
        """
        if not self.enabled or key in self._seen:
            return False
        self._seen.add(key)
        self.logger.warning(message, *args)
        return True

    def seen(self) -> Set[str]:
        return set(self._seen)

    def clear(self) -> None:
        self._seen.clear()
