import logging
import uuid
from datetime import datetime, timezone

from persistence.events import (
    BufferedEventSink,
    EventSeverity,
    EventType,
    LoggingEventSink,
    ObservabilityEvent,
    emit_event,
)
from persistence.models import AuditAction


def test_fields_are_flattened_to_scalars():
    entity_id = uuid.uuid4()
    at = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    event = ObservabilityEvent(
        event_type=EventType.MIGRATION_APPLIED,
        fields={"entity_id": entity_id, "at": at, "action": AuditAction.UPDATE, "count": 3, "gone": None},
    )

    assert event.fields == {
        "entity_id": str(entity_id),
        "at": "2025-03-01T12:00:00+00:00",
        "action": "UPDATE",
        "count": 3,
        "gone": None,
    }


def test_record_is_flat():
    event = ObservabilityEvent(event_type=EventType.POOL_EXHAUSTED, severity=EventSeverity.WARNING, fields={"waiting": 2})
    record = event.to_record()

    assert record["event_type"] == "pool.exhausted"
    assert record["severity"] == "warning"
    assert record["waiting"] == 2
    assert record["event_id"].startswith("evt_")


def test_buffered_sink_filters_and_forwards():
    downstream = BufferedEventSink()
    sink = BufferedEventSink(maxlen=2, downstream=downstream)

    emit_event(sink, EventType.MIGRATION_APPLIED, version=1)
    emit_event(sink, EventType.MIGRATION_APPLIED, version=2)
    emit_event(sink, EventType.MIGRATION_FAILED, EventSeverity.CRITICAL, version=3)

    assert [e.fields["version"] for e in sink.events()] == [2, 3]
    assert len(sink.events(EventType.MIGRATION_FAILED)) == 1
    assert len(downstream.events()) == 3

    sink.clear()
    assert sink.events() == []


def test_emit_without_sink_is_a_no_op():
    assert emit_event(None, EventType.POOL_EXHAUSTED) is None


def test_logging_sink_maps_severity(caplog):
    sink = LoggingEventSink("persistence.events.test")
    with caplog.at_level(logging.INFO, logger="persistence.events.test"):
        emit_event(sink, EventType.TENANT_ISOLATION_VIOLATION, EventSeverity.CRITICAL, operation="update")

    (log_record,) = caplog.records
    assert log_record.levelno == logging.ERROR
    assert "security.tenant_isolation_violation" in log_record.getMessage()
    assert log_record.event["operation"] == "update"
