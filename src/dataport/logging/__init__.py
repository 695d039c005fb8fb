"""Structured event log: dataset and sync events appended as NDJSON."""

from dataport.logging.events import (
    DataportEvent,
    EventLevel,
    EventType,
    emit,
    emit_event,
    make_dataset_event,
    make_sync_event,
    redact_context,
    reset_sink,
    set_workspace,
)
from dataport.logging.sink import EventSink

__all__ = [
    "DataportEvent",
    "EventLevel",
    "EventSink",
    "EventType",
    "emit",
    "emit_event",
    "make_dataset_event",
    "make_sync_event",
    "redact_context",
    "reset_sink",
    "set_workspace",
]
