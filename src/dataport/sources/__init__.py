"""Source adapters and the capabilities they consume."""

from __future__ import annotations

from typing import Any

from dataport.models import SourceDescriptor, SourceKind
from dataport.sources.base import (
    CredentialProvider,
    EnvCredentialProvider,
    FetchResult,
    FileUploadStore,
    InMemoryCredentialProvider,
    SourceAdapter,
    UploadStore,
)
from dataport.sources.live_sheet import LiveSheetAdapter, parse_sheet_url
from dataport.sources.upload import StaticUploadAdapter, sniff_format

__all__ = [
    "CredentialProvider",
    "EnvCredentialProvider",
    "FetchResult",
    "FileUploadStore",
    "InMemoryCredentialProvider",
    "LiveSheetAdapter",
    "SourceAdapter",
    "StaticUploadAdapter",
    "UploadStore",
    "build_adapter",
    "parse_sheet_url",
    "sniff_format",
]


def build_adapter(
    source: SourceDescriptor,
    *,
    org_id: str,
    uploads: UploadStore,
    credentials: CredentialProvider,
    config: dict[str, Any],
    session: Any = None,
) -> SourceAdapter:
    """Construct the adapter variant described by *source*.

    Args:
        source: The dataset's source descriptor.
        org_id: Owning organization (scopes live-sheet credentials).
        uploads: File-storage capability for static uploads.
        credentials: Delegated-credential capability for live sheets.
        config: Workspace config (limits, timeout, API base).
        session: Optional ``requests``-compatible session for live sheets.

    Returns:
        A :class:`SourceAdapter`.
    """
    if source.kind == SourceKind.static_upload:
        return StaticUploadAdapter(
            uploads,
            source.locator,
            source.filename or source.locator,
            source.sheet,
            max_rows=int(config["max_import_rows"]),
            max_cols=int(config["max_import_cols"]),
        )
    return LiveSheetAdapter(
        source.locator,
        org_id,
        credentials,
        sheet=source.sheet,
        cell_range=source.cell_range,
        api_base=config["sheets_api_base"],
        timeout=float(config["fetch_timeout_seconds"]),
        max_rows=int(config["max_import_rows"]),
        max_cols=int(config["max_import_cols"]),
        session=session,
    )
