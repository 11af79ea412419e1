from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict

Listener = Callable[..., Any]


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque handle for a registered listener. Calling it unsubscribes."""

    channel: "ListenerSet"
    subscription_id: int

    def __call__(self) -> bool:
        return self.channel.unsubscribe(self)


class ListenerSet:
    """Synchronous fan-out with per-listener error isolation.

    Listeners run in registration order. A listener that raises is logged and
    skipped; the remaining listeners still run.
    """

    def __init__(self, name: str, logger: Any = None) -> None:
        self.name = name
        self._logger = logger
        self._listeners: Dict[int, Listener] = {}
        self._ids = itertools.count(1)

    def subscribe(self, listener: Listener) -> SubscriptionHandle:
        if not callable(listener):
            raise TypeError(f"{self.name} listener must be callable")
        subscription_id = next(self._ids)
        self._listeners[subscription_id] = listener
        return SubscriptionHandle(channel=self, subscription_id=subscription_id)

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Remove a listener. Safe to call multiple times (idempotent)."""
        return self._listeners.pop(handle.subscription_id, None) is not None

    def notify(self, *args: Any) -> None:
        # Snapshot so listeners may unsubscribe themselves mid-dispatch.
        for listener in list(self._listeners.values()):
            try:
                listener(*args)
            except Exception as e:
                if self._logger:
                    self._logger.error("Error in %s listener: %s", self.name, e)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
