from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Protocol, Tuple

logger = logging.getLogger(__name__)

PROGRESS = "progress"
TASK_STATUS = "taskStatus"
PRODUCT_TASK_STATUS = "productTaskStatus"
PHASE1_COMPLETE = "phase1Complete"
COMPLETE = "complete"
FAILED_PAGES = "failedPages"
FAILED_PRODUCTS = "failedProducts"
ERROR = "error"
STOPPED = "stopped"
WARNING = "warning"
STATE_CHANGED = "stateChanged"
GAP_COMPLETE = "gapComplete"

Payload = Dict[str, Any]


class EventSink(Protocol):
    """
    Outbound channel for engine events. Payloads are full snapshots, so a sink
    may drop or repeat events without losing state.
    """

    def emit(self, event: str, payload: Payload) -> None:
        ...


class NullEventSink:
    def emit(self, event: str, payload: Payload) -> None:
        return None


class LoggingEventSink:
    """Writes a one-line summary of each event to the log."""

    # Snapshot events fire on every task transition; keep them out of INFO.
    _quiet = {PROGRESS, TASK_STATUS, PRODUCT_TASK_STATUS}

    def __init__(self, name: str = "matter_crawler.events") -> None:
        self._logger = logging.getLogger(name)

    def emit(self, event: str, payload: Payload) -> None:
        if event == ERROR:
            self._logger.error("%s: %s (%s)", event, payload.get("message"), payload.get("details"))
        elif event == WARNING:
            self._logger.warning("%s: %s", event, payload.get("message"))
        elif event in self._quiet:
            self._logger.debug("%s: %s", event, _summary(payload))
        else:
            self._logger.info("%s: %s", event, _summary(payload))


class BufferedEventSink:
    """
    Keeps the most recent events with a sequence number so pollers (the HTTP API)
    can ask for everything after the last sequence they saw.
    """

    def __init__(self, maxlen: int = 1000) -> None:
        self._events: Deque[Tuple[int, str, Payload]] = deque(maxlen=maxlen)
        self._seq = 0

    def emit(self, event: str, payload: Payload) -> None:
        self._seq += 1
        self._events.append((self._seq, event, payload))

    @property
    def last_seq(self) -> int:
        return self._seq

    def since(self, seq: int = 0) -> List[Dict[str, Any]]:
        return [
            {"seq": s, "event": e, "payload": p}
            for s, e, p in self._events
            if s > seq
        ]

    def of_type(self, event: str) -> List[Payload]:
        return [p for _, e, p in self._events if e == event]


class FanoutEventSink:
    """Forwards every event to each subscriber; a failing subscriber is logged and skipped."""

    def __init__(self, sinks: Iterable[EventSink] = ()) -> None:
        self._sinks: List[EventSink] = list(sinks)

    def subscribe(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def emit(self, event: str, payload: Payload) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event, payload)
            except Exception as exc:
                logger.warning("Event sink %r failed on %s: %r", sink, event, exc)


def _summary(payload: Payload) -> str:
    parts = []
    for key in ("stage", "state", "processed", "total", "percentage", "count", "message"):
        if key in payload:
            value = payload[key]
            if isinstance(value, float):
                value = f"{value:.1f}"
            parts.append(f"{key}={value}")
    if "tasks" in payload:
        parts.append(f"tasks={len(payload['tasks'])}")
    return ", ".join(parts) or "-"
