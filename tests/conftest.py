"""Shared fixtures: workspaces, XLSX factories, a controllable clock and a
fake sheets API session."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

DOC_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz0123456789"
SHEET_URL = f"https://docs.google.com/spreadsheets/d/{DOC_ID}/edit#gid=0"


@pytest.fixture(autouse=True)
def _detach_event_sink():
    yield
    from dataport.logging.events import reset_sink

    reset_sink()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    from dataport.config import scaffold_workspace

    return scaffold_workspace(tmp_path / "ws")


@pytest.fixture
def make_xlsx(tmp_path: Path):
    """Factory for creating XLSX files with openpyxl from row lists."""
    openpyxl = pytest.importorskip("openpyxl")

    def _make(
        sheets: dict[str, list[list[Any]]],
        filename: str = "test.xlsx",
    ) -> Path:
        wb = openpyxl.Workbook()
        first = True
        for sheet_name, rows in sheets.items():
            if first:
                ws = wb.active
                ws.title = sheet_name
                first = False
            else:
                ws = wb.create_sheet(sheet_name)
            for row in rows:
                ws.append(row)
        path = tmp_path / filename
        wb.save(str(path))
        wb.close()
        return path

    return _make


class Clock:
    """Deterministic clock; call to read, ``advance`` to move forward."""

    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> Clock:
    return Clock()


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self._text = text

    def json(self) -> Any:
        if self._text is not None:
            raise ValueError("not json")
        return self._payload


class FakeSheetSession:
    """Stands in for ``requests.Session`` against the sheets values API.

    Set ``values`` to the grid the next fetch should return, ``status`` to
    an HTTP error code, or ``error`` to an exception to raise.  ``on_get``
    runs inside every request (tests use it to synchronize threads).
    """

    def __init__(self) -> None:
        self.values: list[list[Any]] = []
        self.status = 200
        self.error: Exception | None = None
        self.text: str | None = None
        self.calls: list[dict[str, Any]] = []
        self.on_get = None

    def get(self, url: str, headers=None, params=None, timeout=None) -> FakeResponse:
        self.calls.append({"url": url, "headers": headers, "params": params, "timeout": timeout})
        if self.on_get is not None:
            self.on_get()
        if self.error is not None:
            raise self.error
        if self.status >= 400:
            return FakeResponse(self.status, {"error": {"code": self.status}})
        return FakeResponse(200, {"range": "Sheet1!A1:Z100", "values": self.values}, self.text)


@pytest.fixture
def sheet_session() -> FakeSheetSession:
    return FakeSheetSession()


@pytest.fixture
def credentials():
    from dataport.sources import InMemoryCredentialProvider

    creds = InMemoryCredentialProvider()
    creds.set_credential("acme", "tok-123")
    return creds


@pytest.fixture
def registry(workspace: Path, clock: Clock, sheet_session: FakeSheetSession, credentials):
    from dataport.config import load_config
    from dataport.logging.events import set_workspace
    from dataport.registry import DatasetRegistry

    config = load_config(workspace)
    set_workspace(workspace, config)
    return DatasetRegistry(
        workspace,
        config=config,
        credentials=credentials,
        clock=clock,
        session=sheet_session,
    )


@pytest.fixture
def scheduler(registry):
    from dataport.scheduler import SyncScheduler

    return SyncScheduler(registry)


@pytest.fixture
def doc_id() -> str:
    return DOC_ID


@pytest.fixture
def sheet_url() -> str:
    return SHEET_URL
