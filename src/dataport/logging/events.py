"""Dataset and sync events, context scrubbing and the module-level sink.

Every event is attributed to a dataset (and, for sync events, to the sync
that produced it).  Timestamps are UTC ISO-8601 with a ``Z`` suffix.
:func:`emit` never raises: a failed log write must not fail an import or a
sync.
"""

from __future__ import annotations

import re
import sys
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Dataset lifecycle
    dataset_created = "dataset_created"
    dataset_deleted = "dataset_deleted"
    ingest_warning = "ingest_warning"
    upload_rejected = "upload_rejected"

    # Sync lifecycle
    sync_started = "sync_started"
    sync_completed = "sync_completed"
    sync_failed = "sync_failed"
    sync_rejected = "sync_rejected"
    schema_drift = "schema_drift"


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

# Ingest
UPLOAD_TOO_LARGE = "upload_too_large"
UPLOAD_FORMAT_REJECTED = "upload_format_rejected"

# Sync
SYNC_SOURCE_UNAVAILABLE = "source_unavailable"
SYNC_AUTH_EXPIRED = "auth_expired"
SYNC_SOURCE_FORMAT = "source_format_error"
SYNC_INTERRUPTED = "sync_interrupted"


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class DataportEvent(BaseModel):
    """A single structured log event."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


def make_dataset_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    dataset_id: str,
    org_id: str | None = None,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> DataportEvent:
    """Build an event attributed to one dataset (and its organization)."""
    ctx: dict[str, Any] = {"dataset_id": dataset_id}
    if org_id is not None:
        ctx["org_id"] = org_id
    ctx.update(extra or {})
    return DataportEvent(
        level=level, event_type=event_type, message=message,
        context=ctx, error_code=error_code,
    )


def make_sync_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    dataset_id: str,
    sync_id: str,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> DataportEvent:
    """Build an event attributed to one sync of one dataset."""
    ctx: dict[str, Any] = {"dataset_id": dataset_id, "sync_id": sync_id}
    ctx.update(extra or {})
    return DataportEvent(
        level=level, event_type=event_type, message=message,
        context=ctx, error_code=error_code,
    )


# ---------------------------------------------------------------------------
# Context scrubbing
# ---------------------------------------------------------------------------

# Keys whose values are never written: delegated sheet credentials and
# anything that looks like one.
_SECRET_KEY_RE = re.compile(
    r"token|secret|password|passwd|api_?key|authorization|bearer|cookie|session|credential",
    re.IGNORECASE,
)

_HEADER_ALLOWLIST = frozenset({"accept", "content-type", "user-agent"})

_MAX_STRING = 256

REDACTED = "[REDACTED]"


def _scrub_url(value: str) -> str:
    """Drop userinfo, query and fragment from an http(s) URL.

    Sheet API URLs can carry ``key=`` or ``access_token=`` parameters; the
    document path is kept so failures stay traceable to their sheet.
    """
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return value
    host = parts.hostname if parts.port is None else f"{parts.hostname}:{parts.port}"
    clean = urlunsplit((parts.scheme, host, parts.path, "", ""))
    return f"{clean}?{REDACTED}" if parts.query else clean


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return redact_context(value)
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    if isinstance(value, str):
        if "://" in value:
            value = _scrub_url(value)
        if len(value) > _MAX_STRING:
            value = value[:_MAX_STRING] + "...[truncated]"
    return value


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *context* that is safe to persist.

    Secret-looking keys are replaced with ``[REDACTED]``, a ``headers``
    mapping keeps only allow-listed headers, URLs lose their query strings
    and long strings are truncated.  Nested mappings are scrubbed the same
    way.
    """
    out: dict[str, Any] = {}
    for key, value in context.items():
        if _SECRET_KEY_RE.search(str(key)):
            out[key] = REDACTED
        elif str(key).lower() == "headers" and isinstance(value, dict):
            out[key] = {
                h: v for h, v in value.items() if str(h).lower() in _HEADER_ALLOWLIST
            }
        else:
            out[key] = _scrub(value)
    return out


# ---------------------------------------------------------------------------
# Attribution
# ---------------------------------------------------------------------------

_REQUIRED_CONTEXT: dict[EventType, frozenset[str]] = {
    EventType.dataset_created: frozenset({"dataset_id"}),
    EventType.dataset_deleted: frozenset({"dataset_id"}),
    EventType.sync_rejected: frozenset({"dataset_id"}),
    EventType.sync_started: frozenset({"dataset_id", "sync_id"}),
    EventType.sync_completed: frozenset({"dataset_id", "sync_id"}),
    EventType.sync_failed: frozenset({"dataset_id", "sync_id"}),
    EventType.schema_drift: frozenset({"dataset_id", "sync_id"}),
    # ingest_warning and upload_rejected can fire before a dataset exists
}


def _check_attribution(event: DataportEvent) -> DataportEvent:
    """Downgrade an event that lacks its required ids to ``warning``."""
    missing = _REQUIRED_CONTEXT.get(event.event_type, frozenset()) - set(event.context)
    if not missing:
        return event
    ctx = {**event.context, "_missing_attribution": sorted(missing)}
    return event.model_copy(update={"level": EventLevel.warning, "context": ctx})


# ---------------------------------------------------------------------------
# Module-level sink
# ---------------------------------------------------------------------------

_sink: Any = None  # EventSink | None

_last_failure_report = 0.0
_FAILURE_REPORT_INTERVAL = 60.0


def set_workspace(workspace: Any, config: dict[str, Any] | None = None) -> None:
    """Route events to the logs directory of *workspace*.

    Until this is called, :func:`emit` discards events.

    Args:
        workspace: Root of the dataport workspace.
        config: Loaded workspace config; ``logging_fsync`` and
            ``logging_tail_bytes`` configure the sink.
    """
    global _sink
    from dataport.logging.sink import EventSink

    cfg = config or {}
    tail_bytes = cfg.get("logging_tail_bytes")
    _sink = EventSink(
        Path(workspace),
        fsync=bool(cfg.get("logging_fsync", False)),
        tail_bytes=int(tail_bytes) if tail_bytes is not None else None,
    )


def reset_sink() -> None:
    """Detach the module-level sink; later events are discarded."""
    global _sink
    _sink = None


def _report_failure(exc: BaseException) -> None:
    # At most one stderr line per interval
    global _last_failure_report
    now = time.monotonic()
    if now - _last_failure_report < _FAILURE_REPORT_INTERVAL:
        return
    _last_failure_report = now
    print(f"[dataport] event log write failed: {exc!r}", file=sys.stderr)


def emit(event: DataportEvent) -> None:
    """Scrub, check and append *event* to the global and scoped logs.

    Never raises.
    """
    sink = _sink
    if sink is None:
        return
    try:
        event = event.model_copy(update={"context": redact_context(event.context)})
        event = _check_attribution(event)
        sink.write(
            event,
            dataset_id=event.context.get("dataset_id"),
            sync_id=event.context.get("sync_id"),
        )
    except Exception as exc:
        _report_failure(exc)


def emit_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
) -> None:
    """Emit an event built from parts (for events without a dataset yet)."""
    emit(DataportEvent(
        level=level,
        event_type=event_type,
        message=message,
        context=context or {},
        error_code=error_code,
    ))
