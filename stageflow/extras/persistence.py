"""Persistence plugin: save the current stage (and its timers) after every
transition, restore it when the engine starts.

Storage backends share a tiny interface (``load``/``save``/``delete`` keyed by
string, records are JSON-able dicts) so a custom backend is any object that
provides those three methods.

Example:
    plugin = PersistencePlugin(JsonFileStorage("state/flow.json"), ttl=3_600_000)
    engine = StageFlowEngine(FlowConfig(..., plugins=[plugin]))
    await engine.start()   # resumes where the last run stopped
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..config import PersistenceConfig
from ..errors import (
    ConfigurationError,
    ErrorContext,
    PersistenceError,
    persistence_invalid_json,
    persistence_missing_field,
)
from ..logger import get_logger
from ..plugins import Plugin
from ..timers import TIMER_RETRYING

ErrorHandler = Callable[[Exception, str], Any]


class MemoryStorage:
    """Process-local storage, mostly useful in tests."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._items.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise persistence_invalid_json(key, str(e)) from None

    def save(self, key: str, record: Dict[str, Any]) -> None:
        self._items[key] = json.dumps(record)

    def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._items


class JsonFileStorage:
    """One JSON file holding ``{key: record}`` for every flow stored in it."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise persistence_invalid_json(str(self.path), str(e)) from None

        if not isinstance(data, dict):
            ctx = ErrorContext()
            ctx.add("path", str(self.path))
            ctx.add("got_type", type(data).__name__)
            raise PersistenceError(
                "State file must contain a JSON object",
                why=f"Expected a JSON object, but got {type(data).__name__}.",
                fix="Delete the file, or make it a JSON object keyed by persistence key.",
                context=ctx,
            )
        return data

    def _write_all(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        tmp.replace(self.path)

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        return self._read_all().get(key)

    def save(self, key: str, record: Dict[str, Any]) -> None:
        data = self._read_all()
        data[key] = record
        self._write_all(data)

    def delete(self, key: str) -> None:
        data = self._read_all()
        if data.pop(key, None) is not None:
            self._write_all(data)


class SqliteStorage:
    """SQLite-backed storage that keeps every snapshot.

    ``load`` returns the most recent snapshot for a key. Growth is unbounded
    unless ``prune`` is called (or ``keep_last`` is set, which prunes after
    each save).
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        connection: Optional[sqlite3.Connection] = None,
        keep_last: Optional[int] = None,
    ) -> None:
        if connection is None and path is None:
            raise ValueError("SqliteStorage needs a path or a connection")
        self.conn = connection or sqlite3.connect(str(path))
        self.keep_last = keep_last
        self._ensure_table()

    def _ensure_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS stageflow_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                flow_key TEXT NOT NULL,
                snapshot_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self.conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_stageflow_snapshots_key_id
            ON stageflow_snapshots (flow_key, id DESC)
            """
        )

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            """
            SELECT snapshot_json FROM stageflow_snapshots
            WHERE flow_key = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (key,),
        ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise persistence_invalid_json(key, str(e)) from None

    def save(self, key: str, record: Dict[str, Any], *, created_at: Optional[datetime] = None) -> int:
        timestamp = created_at or datetime.now(timezone.utc)
        cursor = self.conn.execute(
            """
            INSERT INTO stageflow_snapshots (flow_key, snapshot_json, created_at)
            VALUES (?, ?, ?)
            """,
            (key, json.dumps(record, default=str), timestamp.isoformat()),
        )
        self.conn.commit()
        if self.keep_last is not None:
            self.prune(key, keep_last=self.keep_last)
        return cursor.lastrowid  # type: ignore[return-value]

    def delete(self, key: str) -> None:
        self.conn.execute("DELETE FROM stageflow_snapshots WHERE flow_key = ?", (key,))
        self.conn.commit()

    def list_snapshots(self, key: str, *, limit: int = 10) -> List[dict]:
        """Recent snapshots for ``key``: dicts with 'id', 'created_at' and 'stage'."""
        cursor = self.conn.execute(
            """
            SELECT id, snapshot_json, created_at FROM stageflow_snapshots
            WHERE flow_key = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (key, limit),
        )

        results = []
        for row in cursor:
            try:
                stage = json.loads(row[1]).get("stage", "unknown")
            except json.JSONDecodeError:
                stage = "invalid"
            results.append({"id": row[0], "created_at": row[2], "stage": stage})
        return results

    def prune(self, key: str, *, keep_last: int = 10) -> int:
        """Delete old snapshots for ``key``, keeping the most recent ``keep_last``.

        Returns the number of rows deleted.
        """
        cutoff_row = self.conn.execute(
            """
            SELECT id FROM stageflow_snapshots
            WHERE flow_key = ?
            ORDER BY id DESC
            LIMIT 1 OFFSET ?
            """,
            (key, keep_last),
        ).fetchone()

        if cutoff_row is None:
            return 0

        cursor = self.conn.execute(
            "DELETE FROM stageflow_snapshots WHERE flow_key = ? AND id <= ?",
            (key, cutoff_row[0]),
        )
        self.conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self.conn.close()


class PersistencePlugin(Plugin):
    """Saves ``{stage, data, timestamp, version, timers}`` under ``key``.

    Storage errors never break a transition: they go to ``on_error(error,
    operation)`` when given, otherwise they are logged.
    """

    name = "persistence"
    version = "1.0.0"

    def __init__(
        self,
        storage: Any = None,
        *,
        key: str = "stageflow-state",
        ttl: Optional[float] = None,
        version: Optional[str] = None,
        include_timers: bool = True,
        auto_restore: bool = True,
        auto_persist: bool = True,
        clear_expired: bool = True,
        on_error: Optional[ErrorHandler] = None,
        logger: Any = None,
    ) -> None:
        self.storage = storage if storage is not None else MemoryStorage()
        self.key = key
        self.ttl = ttl
        self.flow_version = version
        self.include_timers = include_timers
        self.auto_restore = auto_restore
        self.auto_persist = auto_persist
        self.clear_expired = clear_expired
        self.on_error = on_error
        self._logger = logger or get_logger("stageflow")
        self._engine: Any = None
        self._unsubscribe: Optional[Callable[[], Any]] = None

    @classmethod
    def from_config(cls, config: PersistenceConfig, **kwargs: Any) -> "PersistencePlugin":
        """Build the plugin a ``persistence:`` config section describes."""
        if config.storage == "memory":
            storage: Any = MemoryStorage()
        elif config.storage == "json":
            storage = JsonFileStorage(config.path or "stageflow-state.json")
        elif config.storage == "sqlite":
            storage = SqliteStorage(config.path or "stageflow-state.db")
        else:
            ctx = ErrorContext().add("storage", config.storage)
            raise ConfigurationError(
                f"Persistence storage '{config.storage}' can't be built from config",
                why="Custom storage needs an object, which YAML can't express.",
                fix="Build PersistencePlugin(storage=...) in code and list it under plugins.",
                context=ctx,
            )
        return cls(
            storage,
            key=config.key,
            ttl=config.ttl,
            version=config.version,
            include_timers=config.include_timers,
            **kwargs,
        )

    # --- plugin lifecycle ---

    async def install(self, engine: Any) -> None:
        self._engine = engine
        if self.auto_restore:
            await self.restore()
        if self.include_timers and self.auto_persist:
            self._unsubscribe = engine.subscribe_to_timer_events(self._on_timer_event)

    async def uninstall(self, engine: Any) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._engine = None

    async def after_transition(self, context: Any) -> None:
        if self.auto_persist:
            self.save()

    def _on_timer_event(self, event: Any) -> None:
        # Timers are armed after after_transition, so resave when they change.
        if event.type != TIMER_RETRYING:
            self.save()

    # --- operations ---

    def _fail(self, error: Exception, operation: str) -> None:
        if self.on_error is not None:
            self.on_error(error, operation)
        else:
            self._logger.error("Persistence %s failed for key '%s': %s", operation, self.key, error)

    def _now(self) -> float:
        return self._engine.clock.now()

    def snapshot(self) -> Dict[str, Any]:
        """The record ``save()`` would write for the engine's current state."""
        record: Dict[str, Any] = {
            "stage": self._engine.get_current_stage(),
            "data": self._engine.get_current_data(),
            "timestamp": self._now(),
            "version": self.flow_version,
        }
        if self.include_timers:
            record["timers"] = self._engine.serialize_timer_state()
        return record

    def save(self) -> bool:
        if self._engine is None:
            return False
        try:
            self.storage.save(self.key, self.snapshot())
        except Exception as e:
            self._fail(e, "save")
            return False
        return True

    def _is_expired(self, record: Dict[str, Any]) -> bool:
        if not self.ttl:
            return False
        return self._now() - float(record.get("timestamp", 0)) > self.ttl

    def _is_stale_version(self, record: Dict[str, Any]) -> bool:
        stored = record.get("version")
        return bool(self.flow_version and stored and stored != self.flow_version)

    def _check_record(self, record: Any) -> Dict[str, Any]:
        if not isinstance(record, dict):
            raise persistence_missing_field(self.key, "stage")
        stage = record.get("stage")
        if not stage or not isinstance(stage, str):
            raise persistence_missing_field(self.key, "stage")
        if "timestamp" not in record:
            raise persistence_missing_field(self.key, "timestamp")
        return record

    def load(self) -> Optional[Dict[str, Any]]:
        """The persisted record, or None when missing, expired or from another version."""
        try:
            record = self.storage.load(self.key)
            if record is None:
                return None
            record = self._check_record(record)
        except Exception as e:
            self._fail(e, "load")
            return None

        if self._is_expired(record) or self._is_stale_version(record):
            if self.clear_expired:
                self.clear()
            return None
        return record

    async def restore(self) -> bool:
        """Move the engine to the persisted stage and re-arm its saved timers."""
        if self._engine is None:
            return False
        record = self.load()
        if record is None:
            return False

        try:
            await self._engine.go_to(record["stage"], record.get("data"))
        except Exception as e:
            self._fail(e, "load")
            return False

        timers = record.get("timers")
        if self.include_timers and timers:
            self._engine.restore_timer_state(timers)
        self._logger.info("Restored persisted state: %s", record["stage"])
        return True

    def clear(self) -> None:
        try:
            self.storage.delete(self.key)
        except Exception as e:
            self._fail(e, "clear")

    def has_persisted_state(self) -> bool:
        try:
            record = self.storage.load(self.key)
            if record is None:
                return False
            return not self._is_expired(self._check_record(record))
        except (PersistenceError, OSError, sqlite3.Error):
            return False
