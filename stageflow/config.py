from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .stages import Stage

STORAGE_TYPES = ("memory", "json", "sqlite", "custom")


@dataclass
class PersistenceConfig:
    """Where and how a persistence plugin should keep flow state.

    The engine never reads storage itself; this is handed to
    ``stageflow.extras.persistence.PersistencePlugin.from_config``.
    ``ttl`` is in milliseconds, ``None`` means no expiry.
    """

    enabled: bool = True
    key: str = "stageflow-state"
    storage: str = "memory"
    path: Optional[str] = None
    ttl: Optional[float] = None
    version: Optional[str] = None
    include_timers: bool = True


@dataclass
class FlowConfig:
    initial: str
    stages: List[Stage]
    plugins: List[Any] = field(default_factory=list)
    middleware: List[Any] = field(default_factory=list)
    effects: Dict[str, Any] = field(default_factory=dict)
    persistence: Optional[PersistenceConfig] = None

    def stage_names(self) -> List[str]:
        return [s.name for s in self.stages]

    def find_stage(self, name: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None
