from __future__ import annotations

import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from .events import EventSink, NullEventSink, PROGRESS

logger = logging.getLogger(__name__)

LIST_STAGE = "list"
DETAIL_STAGE = "detail"

# Remaining time is only estimated once this share of a stage is processed.
_ETA_MIN_SHARE = 0.1


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    STOPPED = "stopped"


class TaskBoard:
    """
    Per-item task states for one stage. Every change emits the full snapshot.
    A task that succeeded stays successful so success counts never drop.
    """

    def __init__(self, sink: EventSink, event: str, key_name: str) -> None:
        self._sink = sink
        self._event = event
        self._key_name = key_name
        self._tasks: Dict[Hashable, Dict[str, Any]] = {}

    def initialize(self, keys: Iterable[Hashable]) -> None:
        for key in keys:
            self._tasks[key] = {self._key_name: key, "status": TaskStatus.PENDING.value}
        self._publish()

    def update(self, key: Hashable, status: TaskStatus, error: Optional[str] = None) -> None:
        if self.status_of(key) == TaskStatus.SUCCESS.value and status != TaskStatus.SUCCESS:
            logger.debug("Task %s already succeeded; ignoring %s", key, status.value)
            return
        task: Dict[str, Any] = {self._key_name: key, "status": status.value}
        if error:
            task["error"] = error
        self._tasks[key] = task
        self._publish()

    def status_of(self, key: Hashable) -> Optional[str]:
        task = self._tasks.get(key)
        return task["status"] if task else None

    def snapshot(self) -> List[Dict[str, Any]]:
        return [dict(t) for t in self._tasks.values()]

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in TaskStatus}
        for task in self._tasks.values():
            out[task["status"]] += 1
        return out

    def _publish(self) -> None:
        self._sink.emit(self._event, {"tasks": self.snapshot()})


@dataclass
class ProgressState:
    stage: str
    processed: int
    total: int
    percentage: float
    elapsed_time: float
    estimated_remaining: Optional[float]
    attempt: Optional[int] = None
    current_batch: Optional[int] = None
    total_batches: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProgressReporter:
    """
    Run-level progress. Each planned stage owns an equal share of 0-100 %, and
    the published percentage and stage never move backwards within a run.
    """

    def __init__(
        self,
        sink: EventSink | None = None,
        stages: Sequence[str] = (LIST_STAGE, DETAIL_STAGE),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not stages:
            raise ValueError("stages cannot be empty")
        self._sink = sink or NullEventSink()
        self._stages = list(stages)
        self._clock = clock
        self._run_started = clock()
        self._stage_index = 0
        self._stage_started = self._run_started
        self._processed = 0
        self._total = 0
        self._attempt: Optional[int] = None
        self._batch: Optional[Tuple[int, int]] = None
        self._last_percentage = 0.0
        self.history: List[ProgressState] = []

    @property
    def stage(self) -> str:
        return self._stages[self._stage_index]

    def start_stage(self, stage: str, total: int) -> None:
        index = self._stages.index(stage)
        if index < self._stage_index:
            logger.warning("Ignoring stage regression from %s to %s", self.stage, stage)
            return
        self._stage_index = index
        self._stage_started = self._clock()
        self._processed = 0
        self._total = max(0, total)
        self._attempt = None
        self._batch = None
        self._publish()

    def advance(self, count: int = 1) -> None:
        self._processed = min(self._total, self._processed + count)
        self._publish()

    def retry_round(self, attempt: int) -> None:
        self._attempt = attempt
        self._publish()

    def batch(self, current: int, total: int) -> None:
        self._batch = (current, total)
        self._attempt = None
        self._publish()

    def complete_stage(self) -> None:
        self._processed = self._total
        self._attempt = None
        self._publish()

    def snapshot(self) -> ProgressState:
        now = self._clock()
        share = 100.0 / len(self._stages)
        fraction = (self._processed / self._total) if self._total else 1.0
        percentage = min(100.0, share * (self._stage_index + fraction))
        percentage = max(self._last_percentage, percentage)

        stage_elapsed = now - self._stage_started
        remaining: Optional[float] = None
        if self._total and self._processed > self._total * _ETA_MIN_SHARE:
            per_item = stage_elapsed / self._processed
            remaining = per_item * (self._total - self._processed)

        return ProgressState(
            stage=self.stage,
            processed=self._processed,
            total=self._total,
            percentage=round(percentage, 2),
            elapsed_time=round(now - self._run_started, 3),
            estimated_remaining=round(remaining, 3) if remaining is not None else None,
            attempt=self._attempt,
            current_batch=self._batch[0] if self._batch else None,
            total_batches=self._batch[1] if self._batch else None,
        )

    def _publish(self) -> None:
        state = self.snapshot()
        self._last_percentage = state.percentage
        self.history.append(state)
        self._sink.emit(PROGRESS, state.to_dict())
