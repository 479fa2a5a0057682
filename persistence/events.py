"""
Observability events emitted by the persistence core.

Every event is a flat record: an event type, a severity, a timestamp and
scalar fields. Transport is the sink's business; the core only calls
``sink.emit(event)`` and never lets a sink failure reach the operation
that produced the event.
"""

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool, None]


class EventType(str, Enum):
    """Events the core emits"""
    SLOW_OPERATION = "db.slow_operation"
    POOL_HIGH_UTILIZATION = "pool.high_utilization"
    POOL_EXHAUSTED = "pool.exhausted"
    POOL_CONNECTION_DISCARDED = "pool.connection_discarded"
    TENANT_ISOLATION_VIOLATION = "security.tenant_isolation_violation"
    MIGRATION_APPLIED = "migration.applied"
    MIGRATION_REVERTED = "migration.reverted"
    MIGRATION_FAILED = "migration.failed"


class EventSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


_LOG_LEVELS = {
    EventSeverity.INFO: logging.INFO,
    EventSeverity.WARNING: logging.WARNING,
    EventSeverity.CRITICAL: logging.ERROR,
}


class ObservabilityEvent(BaseModel):
    """Flat observability record"""
    event_id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:16]}")
    event_type: EventType
    severity: EventSeverity = EventSeverity.INFO
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    fields: Dict[str, Scalar] = Field(default_factory=dict)

    @field_validator("fields", mode="before")
    @classmethod
    def flatten_fields(cls, value: Any) -> Dict[str, Scalar]:
        """UUIDs, datetimes and enums are stringified so the record stays flat"""
        flat: Dict[str, Scalar] = {}
        for key, item in dict(value or {}).items():
            if isinstance(item, Enum):
                flat[key] = item.value
            elif item is None or isinstance(item, (bool, int, float, str)):
                flat[key] = item
            elif isinstance(item, datetime):
                flat[key] = item.isoformat()
            else:
                flat[key] = str(item)
        return flat

    def to_record(self) -> Dict[str, Scalar]:
        record: Dict[str, Scalar] = {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
        }
        record.update(self.fields)
        return record


class EventSink(Protocol):
    def emit(self, event: ObservabilityEvent) -> None:
        ...


class LoggingEventSink:
    """Writes events to the standard logger; the default sink."""

    def __init__(self, logger_name: str = "persistence.events") -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: ObservabilityEvent) -> None:
        record = event.to_record()
        self._logger.log(
            _LOG_LEVELS[event.severity],
            "%s %s",
            event.event_type.value,
            {k: v for k, v in record.items() if k not in ("event_type", "severity")},
            extra={"event": record},
        )


class BufferedEventSink:
    """Keeps the most recent events in memory, optionally forwarding them."""

    def __init__(self, maxlen: int = 1000, downstream: Optional[EventSink] = None) -> None:
        self._events: Deque[ObservabilityEvent] = deque(maxlen=maxlen)
        self._downstream = downstream

    def emit(self, event: ObservabilityEvent) -> None:
        self._events.append(event)
        if self._downstream is not None:
            self._downstream.emit(event)

    def events(self, event_type: Optional[EventType] = None) -> List[ObservabilityEvent]:
        if event_type is None:
            return list(self._events)
        return [e for e in self._events if e.event_type == event_type]

    def clear(self) -> None:
        self._events.clear()


def emit_event(
    sink: Optional[EventSink],
    event_type: EventType,
    severity: EventSeverity = EventSeverity.INFO,
    **fields: Any,
) -> Optional[ObservabilityEvent]:
    """Build and emit an event. Sink failures are logged, never raised."""
    if sink is None:
        return None
    try:
        event = ObservabilityEvent(event_type=event_type, severity=severity, fields=fields)
        sink.emit(event)
        return event
    except Exception as exc:
        logger.warning("Failed to emit %s event: %s", event_type.value, exc, exc_info=True)
        return None


_default_sink: EventSink = LoggingEventSink()


def default_sink() -> EventSink:
    return _default_sink
