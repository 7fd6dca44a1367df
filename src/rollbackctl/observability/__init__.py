"""Observability module for rollbackctl.

Provides structured orchestration events and the sinks that consume them.
"""

from .models import Event, EventType
from .sinks import (
    CompositeEventSink,
    EventSink,
    LoggingEventSink,
    MemoryEventSink,
    emit_safely,
)

__all__ = [
    # Models
    "Event",
    "EventType",
    # Sinks
    "EventSink",
    "LoggingEventSink",
    "MemoryEventSink",
    "CompositeEventSink",
    "emit_safely",
]
