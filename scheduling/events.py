"""
Resource Scheduler: Observability Events

Every task transition, reservation change, preemption and workflow
milestone is emitted as a ``SchedulerEvent`` carrying a correlation id.

There is no shared event bus. Each component is handed its own sink
(any callable taking one event) by whoever constructs it:

    recorder = EventRecorder()
    ledger = ReservationLedger(pools, events=fan_out(recorder, LoggingEventSink()))
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from runtime.logging import get_logger, log_structured


class EventType(str, enum.Enum):
    # Task lifecycle
    TASK_SUBMITTED   = "task.submitted"
    TASK_STARTED     = "task.started"
    TASK_COMPLETED   = "task.completed"
    TASK_RETRY       = "task.retry_scheduled"
    TASK_FAILED      = "task.failed"
    TASK_CANCELLED   = "task.cancelled"
    TASK_PREEMPTED   = "task.preempted"
    TASK_DEFERRED    = "task.deferred"
    TASK_OVERRUN     = "task.overrun"

    # Reservation ledger
    RESERVATION_GRANTED   = "reservation.granted"
    RESERVATION_RELEASED  = "reservation.released"
    RESERVATION_RECLAIMED = "reservation.reclaimed"
    RESERVATION_EXPIRED   = "reservation.expired"

    # Workflow instances
    WORKFLOW_STARTED   = "workflow.started"
    WORKFLOW_STEP      = "workflow.step_recorded"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED    = "workflow.failed"
    WORKFLOW_CANCELLED = "workflow.cancelled"


# Warning-level events; everything else logs at INFO
_WARNING_EVENTS = {
    EventType.TASK_FAILED,
    EventType.TASK_OVERRUN,
    EventType.RESERVATION_EXPIRED,
    EventType.WORKFLOW_FAILED,
}


@dataclass
class SchedulerEvent:
    """One structured observability event."""
    event_type: EventType
    correlation_id: str
    timestamp: float = 0.0
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event_type.value,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp,
            **self.fields,
        }


EventSink = Callable[[SchedulerEvent], None]


def make_event(event_type: EventType, correlation_id: str, now: float | None = None,
               **fields: Any) -> SchedulerEvent:
    return SchedulerEvent(
        event_type=event_type,
        correlation_id=correlation_id,
        timestamp=now if now is not None else time.time(),
        fields=fields,
    )


def null_sink(event: SchedulerEvent) -> None:
    """Discard events."""


def fan_out(*sinks: EventSink) -> EventSink:
    """Combine sinks; each event is delivered to every sink in order."""
    def _sink(event: SchedulerEvent) -> None:
        for sink in sinks:
            sink(event)
    return _sink


class EventRecorder:
    """
    Thread-safe in-memory event sink.

    Bounded: once ``max_events`` is reached the oldest events are dropped.
    """

    def __init__(self, max_events: int = 10_000):
        self._events: deque[SchedulerEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def __call__(self, event: SchedulerEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(
        self,
        event_type: EventType | None = None,
        correlation_id: str | None = None,
    ) -> list[SchedulerEvent]:
        with self._lock:
            results = list(self._events)
        if event_type:
            results = [e for e in results if e.event_type == event_type]
        if correlation_id:
            results = [e for e in results if e.correlation_id == correlation_id]
        return results

    def count(self, event_type: EventType) -> int:
        return len(self.events(event_type=event_type))

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class LoggingEventSink:
    """Writes each event as one structured JSON log line."""

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or get_logger("events")

    def __call__(self, event: SchedulerEvent) -> None:
        level = logging.WARNING if event.event_type in _WARNING_EVENTS else logging.INFO
        log_structured(
            self._logger, level, event.event_type.value,
            action=event.event_type.value,
            correlation_id=event.correlation_id,
            event_time=event.timestamp,
            **event.fields,
        )
