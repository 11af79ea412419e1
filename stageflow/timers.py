"""Per-stage timers that fire time-based transitions.

Timers are keyed by ``TimerKey(stage, target, duration)`` and exposed to
callers through opaque ids (``"timer-1"``, ``"timer-2"``, ...). Each timer
carries its own retry counter; a failed fire is retried with exponential
backoff until the policy is exhausted, then dropped. Failures never reach a
caller since nobody awaits a timer.
"""

from __future__ import annotations

import functools
import itertools
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional

from .clock import Clock, TimerHandle
from .ports import TransitionPort
from .retry import TIMER_RETRY, RetryConfig
from .stages import Stage, Transition
from .subscribers import ListenerSet, SubscriptionHandle

TIMER_STARTED = "timer:started"
TIMER_PAUSED = "timer:paused"
TIMER_RESUMED = "timer:resumed"
TIMER_RESET = "timer:reset"
TIMER_COMPLETED = "timer:completed"
TIMER_CANCELLED = "timer:cancelled"
TIMER_RETRYING = "timer:retrying"


class TimerKey(NamedTuple):
    stage: str
    target: str
    duration: float


@dataclass
class TimerRecord:
    id: str
    key: TimerKey
    start_time: float
    remaining: Optional[float] = None  # only meaningful while paused
    due_at: Optional[float] = None  # when the scheduled fire (or retry) is due
    paused: bool = False
    retry_count: int = 0
    max_retries: int = TIMER_RETRY.max_retries
    handle: Optional[TimerHandle] = field(default=None, repr=False, compare=False)

    def remaining_at(self, now: float) -> float:
        if self.paused:
            return self.remaining or 0.0
        if self.due_at is not None:
            return max(0.0, self.due_at - now)
        return max(0.0, self.key.duration - (now - self.start_time))


@dataclass(frozen=True)
class TimerSnapshot:
    id: str
    stage: str
    target: str
    duration: float
    remaining_time: float
    paused: bool
    start_time: float
    retry_count: int = 0
    max_retries: int = TIMER_RETRY.max_retries

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TimerEvent:
    type: str
    timer_id: str
    stage: str
    target: str
    duration: float
    timestamp: float
    remaining_time: Optional[float] = None
    data: Any = None


class TimerScheduler:
    def __init__(
        self,
        port: TransitionPort,
        clock: Clock,
        *,
        retry: RetryConfig = TIMER_RETRY,
        logger: Any = None,
    ) -> None:
        self.port = port
        self.clock = clock
        self.retry = retry.validate()
        self._logger = logger
        self._records: Dict[str, TimerRecord] = {}
        self._by_key: Dict[TimerKey, str] = {}
        self._ids = itertools.count(1)
        self.events = ListenerSet("timer event", logger)

    # --- bookkeeping ---

    def _records_for(self, stage: str) -> List[TimerRecord]:
        return [r for r in self._records.values() if r.key.stage == stage]

    def _register(self, record: TimerRecord) -> None:
        self._records[record.id] = record
        self._by_key[record.key] = record.id

    def _drop(self, record: TimerRecord) -> None:
        if record.handle is not None:
            record.handle.cancel()
            record.handle = None
        if self._records.pop(record.id, None) is not None:
            if self._by_key.get(record.key) == record.id:
                del self._by_key[record.key]

    def _schedule(self, record: TimerRecord, delay: float) -> None:
        record.due_at = self.clock.now() + delay
        record.handle = self.clock.call_later(delay, functools.partial(self._fire, record.id))

    def _new_record(self, key: TimerKey, start_time: float) -> TimerRecord:
        return TimerRecord(
            id=f"timer-{next(self._ids)}",
            key=key,
            start_time=start_time,
            max_retries=self.retry.max_retries,
        )

    def _emit(self, type_: str, record: TimerRecord, remaining: Optional[float] = None) -> None:
        if not len(self.events):
            return
        self.events.notify(
            TimerEvent(
                type=type_,
                timer_id=record.id,
                stage=record.key.stage,
                target=record.key.target,
                duration=record.key.duration,
                timestamp=self.clock.now(),
                remaining_time=remaining,
                data=self.port.current_data(),
            )
        )

    def subscribe(self, listener: Callable[[TimerEvent], Any]) -> SubscriptionHandle:
        return self.events.subscribe(listener)

    # --- arming and teardown ---

    def arm(self, stage: Stage) -> List[TimerRecord]:
        """(Re)program every timed transition of ``stage`` at full duration.

        Nothing is armed while the engine is idle; ``start()`` arms the stage.
        """
        self.clear_stage(stage.name)
        if not self.port.is_started():
            return []
        now = self.clock.now()
        armed = []
        for transition in stage.timed_transitions():
            record = self._new_record(TimerKey(stage.name, transition.target, transition.after), now)
            self._register(record)
            self._schedule(record, transition.after)
            self._emit(TIMER_STARTED, record, transition.after)
            armed.append(record)
        return armed

    def ensure_armed(self, stage: Stage) -> bool:
        """Arm ``stage`` unless it already has timers (e.g. restored ones)."""
        if self.has_timers(stage.name):
            return False
        self.arm(stage)
        return True

    def clear_stage(self, stage: str) -> None:
        for record in self._records_for(stage):
            self._drop(record)

    def clear_all(self) -> None:
        for record in list(self._records.values()):
            self._drop(record)

    # --- firing ---

    def _guard_allows(self, record: TimerRecord) -> bool:
        return (
            self.port.is_started()
            and self.port.current_stage() == record.key.stage
            and not self.port.is_transitioning()
        )

    def _transition_for(self, key: TimerKey) -> Optional[Transition]:
        stage = self.port.find_stage(key.stage)
        if stage is None:
            return None
        for transition in stage.timed_transitions():
            if transition.target == key.target and transition.after == key.duration:
                return transition
        return None

    async def _fire(self, timer_id: str) -> None:
        record = self._records.get(timer_id)
        if record is None or record.paused:
            return
        record.handle = None

        transition = self._transition_for(record.key)
        if transition is None or not self._guard_allows(record):
            self._drop(record)
            return

        try:
            await self.port.run_timed_transition(transition)
        except Exception as e:
            self._on_failure(record, e)
            return

        # The transition normally tears the record down itself.
        self._drop(record)
        self._emit(TIMER_COMPLETED, record)

    def _on_failure(self, record: TimerRecord, error: Exception) -> None:
        if self._logger:
            self._logger.error(
                "Timer-based transition %s -> %s failed (attempt %d/%d): %s",
                record.key.stage,
                record.key.target,
                record.retry_count + 1,
                record.max_retries + 1,
                error,
            )

        if record.id not in self._records:
            # Torn down while the transition ran; nothing left to retry.
            return

        if record.retry_count < record.max_retries:
            delay = self.retry.delay_for(record.retry_count)
            record.retry_count += 1
            self._schedule(record, delay)
            self._emit(TIMER_RETRYING, record, delay)
            return

        self._drop(record)
        self._emit(TIMER_CANCELLED, record)

    # --- pause / resume / reset ---

    def pause(self, stage: str) -> int:
        now = self.clock.now()
        count = 0
        for record in self._records_for(stage):
            if record.paused:
                continue
            if record.handle is not None:
                record.handle.cancel()
                record.handle = None
            record.remaining = record.remaining_at(now)
            record.paused = True
            self._emit(TIMER_PAUSED, record, record.remaining)
            count += 1
        return count

    def resume(self, stage: str) -> int:
        now = self.clock.now()
        count = 0
        for record in self._records_for(stage):
            if not record.paused:
                continue
            remaining = record.remaining or 0.0
            record.start_time = now - (record.key.duration - remaining)
            record.paused = False
            record.remaining = None
            self._schedule(record, remaining)
            self._emit(TIMER_RESUMED, record, remaining)
            count += 1
        return count

    def reset(self, stage: Stage) -> List[TimerRecord]:
        for record in self._records_for(stage.name):
            self._drop(record)
            self._emit(TIMER_RESET, record)
        return self.arm(stage)

    def cancel(self, timer_id: str) -> bool:
        record = self._records.get(timer_id)
        if record is None:
            return False
        remaining = record.remaining_at(self.clock.now())
        self._drop(record)
        self._emit(TIMER_CANCELLED, record, remaining)
        return True

    # --- queries ---

    def remaining_time(self, stage: str) -> float:
        """Minimum remaining time across the stage's timers; 0 when there are none."""
        now = self.clock.now()
        remaining = [r.remaining_at(now) for r in self._records_for(stage)]
        return min(remaining) if remaining else 0.0

    def are_paused(self, stage: str) -> bool:
        return any(r.paused for r in self._records_for(stage))

    def has_timers(self, stage: str) -> bool:
        return bool(self._records_for(stage))

    def _snapshot(self, record: TimerRecord, now: float) -> TimerSnapshot:
        return TimerSnapshot(
            id=record.id,
            stage=record.key.stage,
            target=record.key.target,
            duration=record.key.duration,
            remaining_time=record.remaining_at(now),
            paused=record.paused,
            start_time=record.start_time,
            retry_count=record.retry_count,
            max_retries=record.max_retries,
        )

    def active_timers(self) -> List[TimerSnapshot]:
        now = self.clock.now()
        return [self._snapshot(r, now) for r in self._records.values()]

    def stage_timers(self, stage: str) -> List[TimerSnapshot]:
        return [t for t in self.active_timers() if t.stage == stage]

    def __iter__(self) -> Iterator[TimerRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    # --- serialization ---

    def serialize(self) -> str:
        return json.dumps(
            {
                "timers": [t.to_dict() for t in self.active_timers()],
                "timestamp": self.clock.now(),
            }
        )

    def restore(self, serialized: str, current_stage: str) -> bool:
        """Re-arm the timers of ``current_stage`` from a ``serialize()`` payload.

        Running timers lose the wall-clock time elapsed since the snapshot;
        paused timers keep their recorded remaining time. Timers of other
        stages, or that no longer match a declared transition, are skipped.
        """
        try:
            payload = json.loads(serialized)
            items = list(payload["timers"])
            snapshot_time = float(payload["timestamp"])
        except (ValueError, KeyError, TypeError) as e:
            if self._logger:
                self._logger.error("Failed to restore timer state: %s", e)
            return False

        stage = self.port.find_stage(current_stage)
        if stage is None:
            return False

        now = self.clock.now()
        elapsed = max(0.0, now - snapshot_time)
        self.clear_stage(current_stage)

        for item in items:
            try:
                if item["stage"] != current_stage:
                    continue
                key = TimerKey(current_stage, item["target"], float(item["duration"]))
                remaining = float(item["remaining_time"])
                paused = bool(item.get("paused", False))
                retry_count = int(item.get("retry_count", 0))
            except (KeyError, TypeError, ValueError) as e:
                if self._logger:
                    self._logger.warning("Skipping malformed timer snapshot %r: %s", item, e)
                continue

            transition = self._transition_for(key)
            if transition is None:
                continue
            key = TimerKey(current_stage, transition.target, transition.after)

            if not paused:
                remaining = max(0.0, remaining - elapsed)

            record = self._new_record(key, now - (key.duration - remaining))
            record.retry_count = retry_count
            if paused:
                record.paused = True
                record.remaining = remaining
                self._register(record)
            else:
                self._register(record)
                self._schedule(record, remaining)
            self._emit(TIMER_STARTED, record, remaining)

        return True
