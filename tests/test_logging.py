"""Tests for the dataport structured event logging system."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

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


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ws_dir(tmp_path: Path) -> Path:
    """Create a minimal workspace directory."""
    (tmp_path / "logs").mkdir()
    return tmp_path


@pytest.fixture
def sink(ws_dir: Path) -> EventSink:
    return EventSink(ws_dir)


def _global_lines(ws_dir: Path) -> list[dict]:
    path = ws_dir / "logs" / "events.ndjson"
    return [json.loads(line) for line in path.read_text().strip().splitlines()]


# ---------------------------------------------------------------------------
# A) Event schema
# ---------------------------------------------------------------------------


class TestDataportEvent:
    def test_event_defaults(self):
        evt = DataportEvent(
            level=EventLevel.info,
            event_type=EventType.dataset_created,
            message="hello",
        )
        assert evt.schema_version == 1
        assert evt.ts.endswith("Z")
        assert evt.level == "info"
        assert evt.event_type == "dataset_created"
        assert evt.context == {}
        assert evt.error_code is None

    def test_event_serialization(self):
        evt = DataportEvent(
            level=EventLevel.warning,
            event_type=EventType.ingest_warning,
            message="truncated",
        )
        d = evt.model_dump(mode="json")
        assert d["level"] == "warning"
        assert d["event_type"] == "ingest_warning"

    def test_all_event_types_exist(self):
        expected = {
            "dataset_created", "dataset_deleted", "ingest_warning", "upload_rejected",
            "sync_started", "sync_completed", "sync_failed", "sync_rejected",
            "schema_drift",
        }
        assert {e.value for e in EventType} == expected

    def test_sync_event_attribution(self):
        evt = make_sync_event(
            EventType.sync_completed,
            EventLevel.info,
            "done",
            dataset_id="d1",
            sync_id="s1",
            extra={"row_count": 3},
        )
        assert evt.context == {"dataset_id": "d1", "sync_id": "s1", "row_count": 3}

    def test_dataset_event_org(self):
        evt = make_dataset_event(
            EventType.dataset_created, EventLevel.info, "made", dataset_id="d1", org_id="acme"
        )
        assert evt.context["org_id"] == "acme"


# ---------------------------------------------------------------------------
# B) Filesystem NDJSON sink
# ---------------------------------------------------------------------------


class TestEventSink:
    def _event(self, message: str = "m", level: EventLevel = EventLevel.info,
               event_type: EventType = EventType.dataset_created) -> DataportEvent:
        return DataportEvent(level=level, event_type=event_type, message=message)

    def test_write_creates_global_log(self, sink, ws_dir):
        sink.write(self._event("first"))
        [parsed] = _global_lines(ws_dir)
        assert parsed["message"] == "first"
        assert parsed["level"] == "info"

    def test_json_sort_keys(self, sink, ws_dir):
        sink.write(self._event())
        line = (ws_dir / "logs" / "events.ndjson").read_text().strip()
        keys = list(json.loads(line).keys())
        assert keys == sorted(keys)

    def test_scoped_logs(self, sink, ws_dir):
        sink.write(self._event("synced"), dataset_id="d1", sync_id="s1")
        assert (ws_dir / "logs" / "datasets" / "d1.ndjson").exists()
        assert (ws_dir / "logs" / "sync" / "s1.ndjson").exists()
        assert sink.read_dataset_log("d1")[0]["message"] == "synced"
        assert len(sink.read_sync_log("s1")) == 1

    def test_unsafe_ids_not_used_as_paths(self, sink, ws_dir):
        sink.write(self._event(), dataset_id="../escape", sync_id="a/b")
        assert not (ws_dir / "escape.ndjson").exists()
        assert list((ws_dir / "logs" / "sync").iterdir()) == []
        assert sink.read_dataset_log("../escape") == []

    def test_read_global_most_recent_first(self, sink):
        for i in range(5):
            sink.write(self._event(f"event {i}"))
        events = sink.read_global()
        assert [e["message"] for e in events] == [f"event {i}" for i in reversed(range(5))]

    def test_read_global_filters(self, sink):
        sink.write(self._event("info msg"))
        sink.write(self._event("error msg", EventLevel.error, EventType.sync_failed))
        sink.write(DataportEvent(
            level=EventLevel.info,
            event_type=EventType.sync_started,
            message="scoped",
            context={"dataset_id": "d9"},
        ))

        assert [e["message"] for e in sink.read_global(level="error")] == ["error msg"]
        assert [e["message"] for e in sink.read_global(event_type="sync_started")] == ["scoped"]
        assert [e["message"] for e in sink.read_global(dataset_id="d9")] == ["scoped"]

    def test_read_global_limit(self, sink):
        for i in range(10):
            sink.write(self._event(f"event {i}"))
        assert len(sink.read_global(limit=3)) == 3

    def test_tail_bounded_read(self, ws_dir):
        small = EventSink(ws_dir, tail_bytes=400)
        for i in range(50):
            small.write(self._event(f"event {i}"))
        events = small.read_global(limit=2000)
        assert 0 < len(events) < 50
        assert events[0]["message"] == "event 49"

    def test_corrupt_lines_skipped(self, sink, ws_dir):
        sink.write(self._event("good"))
        with open(ws_dir / "logs" / "events.ndjson", "a") as f:
            f.write("{not json\n")
        assert [e["message"] for e in sink.read_global()] == ["good"]

    def test_read_missing_log_returns_empty(self, sink):
        assert sink.read_dataset_log("nonexistent") == []
        assert sink.read_sync_log("nonexistent") == []
        assert sink.read_global() == []


# ---------------------------------------------------------------------------
# C) Secret redaction
# ---------------------------------------------------------------------------


class TestRedaction:
    def test_sensitive_keys(self):
        out = redact_context({"access_token": "abc", "credential": "x", "dataset_id": "d1"})
        assert out["access_token"] == "[REDACTED]"
        assert out["credential"] == "[REDACTED]"
        assert out["dataset_id"] == "d1"

    def test_url_query_stripped(self):
        out = redact_context({"url": "https://user:pw@sheets.test/v4/x?key=secret"})
        assert out["url"] == "https://sheets.test/v4/x?[REDACTED]"

    def test_headers_whitelisted(self):
        out = redact_context({"headers": {"Authorization": "Bearer t", "Accept": "json"}})
        assert out["headers"] == {"Accept": "json"}

    def test_nested_and_long_values(self):
        out = redact_context({"outer": {"password": "p"}, "blob": "x" * 300})
        assert out["outer"]["password"] == "[REDACTED]"
        assert out["blob"].endswith("...[truncated]")


# ---------------------------------------------------------------------------
# D) Module-level emit helpers (safety)
# ---------------------------------------------------------------------------


class TestEmitHelpers:
    def test_emit_without_workspace_is_noop(self, ws_dir):
        reset_sink()
        emit_event(EventType.dataset_created, EventLevel.info, "dropped")
        assert not (ws_dir / "logs" / "events.ndjson").exists()

    def test_set_workspace_enables_logging(self, ws_dir):
        set_workspace(ws_dir)
        emit_event(EventType.dataset_created, EventLevel.info, "hello from test", {"dataset_id": "d1"})
        [parsed] = _global_lines(ws_dir)
        assert parsed["message"] == "hello from test"

    def test_error_code_and_level(self, ws_dir):
        set_workspace(ws_dir)
        emit_event(EventType.upload_rejected, EventLevel.error, "boom", error_code="upload_too_large")
        emit_event(EventType.ingest_warning, EventLevel.warning, "careful")
        first, second = _global_lines(ws_dir)
        assert first["error_code"] == "upload_too_large"
        assert first["level"] == "error"
        assert second["level"] == "warning"

    def test_emit_redacts_before_writing(self, ws_dir):
        set_workspace(ws_dir)
        emit_event(EventType.ingest_warning, EventLevel.info, "x", {"token": "tok-123"})
        raw = (ws_dir / "logs" / "events.ndjson").read_text()
        assert "tok-123" not in raw

    def test_missing_attribution_downgrades(self, ws_dir):
        set_workspace(ws_dir)
        emit_event(EventType.sync_completed, EventLevel.info, "no ids", {"dataset_id": "d1"})
        [parsed] = _global_lines(ws_dir)
        assert parsed["level"] == "warning"
        assert parsed["context"]["_missing_attribution"] == ["sync_id"]

    def test_emit_routes_to_scoped_logs(self, ws_dir):
        set_workspace(ws_dir)
        emit(make_sync_event(
            EventType.sync_started, EventLevel.info, "go", dataset_id="d1", sync_id="s1"
        ))
        sink = EventSink(ws_dir)
        assert len(sink.read_dataset_log("d1")) == 1
        assert len(sink.read_sync_log("s1")) == 1

    def test_emit_never_raises(self, ws_dir, monkeypatch):
        set_workspace(ws_dir)

        def _boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(EventSink, "write", _boom)
        emit_event(EventType.dataset_created, EventLevel.info, "lost", {"dataset_id": "d1"})
