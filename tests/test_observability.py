"""Tests for the observability module.

Tests for orchestration events and the sinks that consume them.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from rollbackctl.observability import (
    CompositeEventSink,
    Event,
    EventType,
    LoggingEventSink,
    MemoryEventSink,
    emit_safely,
)

# =============================================================================
# Model Tests
# =============================================================================


class TestEventType:
    """Tests for EventType enum."""

    def test_step_events(self):
        assert EventType.STEP_STARTED == "step_started"
        assert EventType.STEP_SUCCEEDED == "step_succeeded"
        assert EventType.STEP_FAILED == "step_failed"

    def test_from_string(self):
        assert EventType("point_created") == EventType.POINT_CREATED
        assert EventType("auto_restore_step") == EventType.AUTO_RESTORE_STEP


class TestEvent:
    """Tests for Event model."""

    def test_to_dict(self):
        timestamp = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        event = Event(
            event_type=EventType.STEP_FAILED,
            environment="staging",
            execution_id="abc",
            data={"step": "smoke test"},
            timestamp=timestamp,
        )
        data = event.to_dict()
        assert data["event_type"] == "step_failed"
        assert data["timestamp"] == "2024-05-01T12:30:00+00:00"
        assert data["data"] == {"step": "smoke test"}

    def test_str(self):
        timestamp = datetime(2024, 5, 1, 12, 30, 5, tzinfo=timezone.utc)
        event = Event(EventType.EXECUTION_STARTED, "staging", "abc", timestamp=timestamp)
        assert str(event) == "12:30:05 [abc] staging execution_started"

    def test_str_without_execution(self):
        timestamp = datetime(2024, 5, 1, 12, 30, 5, tzinfo=timezone.utc)
        event = Event(EventType.POINT_CREATED, timestamp=timestamp)
        assert str(event) == "12:30:05 point_created"

    def test_default_timestamp_is_utc(self):
        assert Event(EventType.POINT_CREATED).timestamp.tzinfo == timezone.utc


# =============================================================================
# Sink Tests
# =============================================================================


class TestMemoryEventSink:
    """Tests for the in-memory sink."""

    def test_of_type(self):
        sink = MemoryEventSink()
        sink.emit(Event(EventType.STEP_STARTED, data={"step": "a"}))
        sink.emit(Event(EventType.STEP_FAILED, data={"step": "a"}))
        sink.emit(Event(EventType.STEP_STARTED, data={"step": "b"}))

        assert len(sink.events) == 3
        started = sink.of_type(EventType.STEP_STARTED)
        assert [e.data["step"] for e in started] == ["a", "b"]


class TestLoggingEventSink:
    """Tests for the logging sink."""

    def test_info_line(self, caplog):
        with caplog.at_level(logging.INFO, logger="rollbackctl.events"):
            LoggingEventSink().emit(
                Event(EventType.POINT_CREATED, "staging", data={"point_id": "rb-1"})
            )
        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        assert "point_created" in record.getMessage()
        assert json.dumps({"point_id": "rb-1"}) in record.getMessage()

    def test_failures_are_warnings(self, caplog):
        sink = LoggingEventSink()
        with caplog.at_level(logging.INFO, logger="rollbackctl.events"):
            sink.emit(Event(EventType.STEP_FAILED, data={"step": "a"}))
            sink.emit(Event(EventType.AUTO_RESTORE_STEP, data={"success": False}))
            sink.emit(Event(EventType.AUTO_RESTORE_STEP, data={"success": True}))
        assert [r.levelno for r in caplog.records] == [
            logging.WARNING,
            logging.WARNING,
            logging.INFO,
        ]

    def test_custom_logger(self, caplog):
        log = logging.getLogger("tests.events")
        with caplog.at_level(logging.INFO, logger="tests.events"):
            LoggingEventSink(log).emit(Event(EventType.POINT_CREATED))
        assert caplog.records[-1].name == "tests.events"


class TestCompositeEventSink:
    """Tests for fanning out events."""

    def test_fan_out(self):
        first, second = MemoryEventSink(), MemoryEventSink()
        CompositeEventSink([first, second]).emit(Event(EventType.POINT_CREATED))
        assert len(first.events) == 1
        assert len(second.events) == 1


class TestEmitSafely:
    """Tests for emit_safely."""

    def test_builds_event(self):
        sink = MemoryEventSink()
        emit_safely(sink, EventType.STATUS_CHANGED, "staging", "abc", status="validating")
        event = sink.events[0]
        assert event.environment == "staging"
        assert event.execution_id == "abc"
        assert event.data == {"status": "validating"}

    def test_none_sink(self):
        emit_safely(None, EventType.POINT_CREATED)

    def test_broken_sink_logged(self, caplog):
        class BrokenSink:
            def emit(self, event):
                raise OSError("disk full")

        with caplog.at_level(logging.WARNING, logger="rollbackctl.observability.sinks"):
            emit_safely(BrokenSink(), EventType.POINT_CREATED)
        assert "disk full" in caplog.text
