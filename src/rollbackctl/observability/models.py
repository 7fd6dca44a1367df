"""Structured events emitted while capturing points and running rollbacks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Types of events that can be emitted."""

    # Rollback points
    POINT_CREATED = "point_created"

    # Executions
    EXECUTION_STARTED = "execution_started"
    STATUS_CHANGED = "status_changed"
    EXECUTION_FINISHED = "execution_finished"

    # Pipeline steps
    STEP_STARTED = "step_started"
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"

    # Auto-restore
    AUTO_RESTORE_STARTED = "auto_restore_started"
    AUTO_RESTORE_STEP = "auto_restore_step"


@dataclass
class Event:
    """An orchestration event.

    Attributes:
        event_type: The type of event.
        environment: Environment the event concerns.
        execution_id: Associated rollback execution, if any.
        data: Additional event data.
        timestamp: When the event occurred.
    """

    event_type: EventType
    environment: str | None = None
    execution_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "environment": self.environment,
            "execution_id": self.execution_id,
            "data": self.data,
        }

    def __str__(self) -> str:
        exec_str = f" [{self.execution_id}]" if self.execution_id else ""
        env_str = f" {self.environment}" if self.environment else ""
        return f"{self.timestamp.strftime('%H:%M:%S')}{exec_str}{env_str} {self.event_type.value}"
