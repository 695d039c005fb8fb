"""Append-only NDJSON event files under ``<workspace>/logs``.

Every event goes to ``events.ndjson``.  Events attributed to a dataset are
also appended to ``datasets/<dataset_id>.ndjson`` and events of one sync to
``sync/<sync_id>.ndjson``, so the history of a single dataset or sync can be
read without scanning the global log.

Appends take an exclusive ``fcntl.flock`` and reads a shared one; lines are
serialized with sorted keys.  Reads only look at the tail of a file
(``logging_tail_bytes``), which bounds the cost of tailing a long log.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

from dataport.logging.events import DataportEvent
from dataport.utils.locks import locked_fd

GLOBAL_LOG = "events.ndjson"
SCOPES = ("datasets", "sync")

# Ids become file names; anything else is refused.
_LOG_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")

_DEFAULT_TAIL_BYTES = 2 * 1024 * 1024


class EventSink:
    """Writes events to the global log and their dataset and sync logs."""

    def __init__(self, workspace: Path, *, fsync: bool = False, tail_bytes: int | None = None) -> None:
        self.logs_dir = Path(workspace) / "logs"
        self._fsync = fsync
        self._tail_bytes = tail_bytes or _DEFAULT_TAIL_BYTES
        for scope in SCOPES:
            (self.logs_dir / scope).mkdir(parents=True, exist_ok=True)

    def _scoped_path(self, scope: str, log_id: str | None) -> Path | None:
        if not log_id or not _LOG_ID_RE.match(log_id):
            return None
        return self.logs_dir / scope / f"{log_id}.ndjson"

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write(
        self,
        event: DataportEvent,
        *,
        dataset_id: str | None = None,
        sync_id: str | None = None,
    ) -> None:
        """Append *event* to the global log and to the logs it is scoped to."""
        line = (json.dumps(event.model_dump(mode="json"), sort_keys=True, default=str) + "\n").encode()
        targets = [
            self.logs_dir / GLOBAL_LOG,
            self._scoped_path("datasets", dataset_id),
            self._scoped_path("sync", sync_id),
        ]
        for path in targets:
            if path is not None:
                self._append(path, line)

    def _append(self, path: Path, line: bytes) -> None:
        with locked_fd(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND) as fd:
            os.write(fd, line)
            if self._fsync:
                os.fsync(fd)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read_global(
        self,
        *,
        level: str | None = None,
        event_type: str | None = None,
        dataset_id: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Newest-first events from the global log, optionally filtered."""
        def keep(evt: dict[str, Any]) -> bool:
            if level and evt.get("level") != level:
                return False
            if event_type and evt.get("event_type") != event_type:
                return False
            if dataset_id and evt.get("context", {}).get("dataset_id") != dataset_id:
                return False
            return True

        events = [e for e in self._read(self.logs_dir / GLOBAL_LOG) if keep(e)]
        events.reverse()
        return events[: min(limit, 2000)]

    def read_dataset_log(self, dataset_id: str) -> list[dict[str, Any]]:
        """All events of one dataset, oldest first."""
        return self._read(self._scoped_path("datasets", dataset_id))

    def read_sync_log(self, sync_id: str) -> list[dict[str, Any]]:
        """All events of one sync, oldest first."""
        return self._read(self._scoped_path("sync", sync_id))

    def _read(self, path: Path | None) -> list[dict[str, Any]]:
        if path is None or not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for raw in self._tail(path).splitlines():
            raw = raw.strip()
            if not raw:
                continue
            try:
                events.append(json.loads(raw))
            except json.JSONDecodeError:
                # Torn or hand-edited line
                continue
        return events

    def _tail(self, path: Path) -> str:
        with locked_fd(path, os.O_RDONLY, shared=True) as fd:
            size = os.fstat(fd).st_size
            start = max(0, size - self._tail_bytes)
            os.lseek(fd, start, os.SEEK_SET)
            data = os.read(fd, size - start)
        if start > 0:
            # First line is probably cut
            data = data[data.find(b"\n") + 1:]
        return data.decode("utf-8", errors="replace")
