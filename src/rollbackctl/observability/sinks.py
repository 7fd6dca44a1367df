"""Event sinks consuming orchestration events."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from typing import Any, Protocol

from .models import Event, EventType

logger = logging.getLogger(__name__)

events_logger = logging.getLogger("rollbackctl.events")

_FAILURE_EVENTS = {EventType.STEP_FAILED}


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class LoggingEventSink:
    """Writes every event as one structured log line."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or events_logger

    def emit(self, event: Event) -> None:
        level = logging.WARNING if event.event_type in _FAILURE_EVENTS else logging.INFO
        if event.event_type == EventType.AUTO_RESTORE_STEP and not event.data.get("success"):
            level = logging.WARNING
        self.log.log(level, "%s %s", event, json.dumps(event.data, default=str, sort_keys=True))


class MemoryEventSink:
    """Keeps events in memory."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType) -> list[Event]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class CompositeEventSink:
    """Fans events out to several sinks."""

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event: Event) -> None:
        for sink in self.sinks:
            sink.emit(event)


def emit_safely(
    sink: EventSink | None,
    event_type: EventType,
    environment: str | None = None,
    execution_id: str | None = None,
    **data: Any,
) -> None:
    """Emit an event; a broken sink is logged and never interrupts a rollback."""
    if sink is None:
        return
    try:
        sink.emit(
            Event(
                event_type=event_type,
                environment=environment,
                execution_id=execution_id,
                data=data,
            )
        )
    except Exception as e:
        logger.warning("Event sink failed for %s: %s", event_type.value, e)
