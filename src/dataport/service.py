"""Shared service layer for the dataport HTTP server and CLI.

Every inbound operation goes through :class:`DatasetService`, which scopes
datasets to an organization, turns models into JSON-ready dicts and records
rejected uploads in the event log.  Routes and commands stay thin wrappers.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from dataport.config import load_config
from dataport.errors import DatasetNotFoundError, SourceFormatError, ValidationError
from dataport.logging.events import (
    UPLOAD_FORMAT_REJECTED,
    UPLOAD_TOO_LARGE,
    EventLevel,
    EventType,
    emit_event,
    set_workspace,
)
from dataport.logging.sink import EventSink
from dataport.models import AggregationKind, ChartConfig, Dataset
from dataport.registry import DatasetRegistry
from dataport.scheduler import SyncScheduler
from dataport.sources import CredentialProvider, EnvCredentialProvider, UploadStore
from dataport.visualizations import VisualizationStore

EXPORT_FORMATS = ("csv", "json", "parquet")


class DatasetService:
    """Inbound facade over the registry, scheduler and visualization store."""

    def __init__(
        self,
        workspace: Path,
        *,
        config: dict[str, Any] | None = None,
        uploads: UploadStore | None = None,
        credentials: CredentialProvider | None = None,
        clock: Callable[[], datetime] | None = None,
        session: Any = None,
        recover: bool = True,
    ) -> None:
        """Open a workspace.

        Args:
            workspace: Root of the dataport workspace.
            config: Workspace config; loaded from ``dataport.yaml`` if None.
            uploads: File-storage capability.
            credentials: Delegated-credential capability; defaults to the
                ``DATAPORT_SHEETS_TOKEN`` environment variable.
            clock: Returns the current time.
            session: ``requests``-compatible session for live sheets.
            recover: Move syncs interrupted by a previous process to ``error``.
        """
        self.workspace = Path(workspace)
        self.config = config if config is not None else load_config(self.workspace)
        set_workspace(self.workspace, self.config)
        self.registry = DatasetRegistry(
            self.workspace,
            config=self.config,
            uploads=uploads,
            credentials=credentials or EnvCredentialProvider(),
            clock=clock,
            session=session,
        )
        self.scheduler = SyncScheduler(self.registry)
        self.visualizations = VisualizationStore(self.registry)
        if recover:
            self.scheduler.recover_interrupted()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned(self, org_id: str, dataset_id: str) -> Dataset:
        """Load a dataset, hiding those of other organizations."""
        record = self.registry.get_dataset(dataset_id)
        if record.org_id != org_id:
            raise DatasetNotFoundError(dataset_id)
        return record

    @staticmethod
    def _summary(record: Dataset) -> dict[str, Any]:
        return record.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def import_upload(
        self,
        org_id: str,
        name: str,
        data: bytes,
        filename: str,
        *,
        sheet: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create a dataset from uploaded file bytes."""
        try:
            record = self.registry.import_upload(
                org_id, name, data, filename, sheet=sheet, description=description
            )
        except (ValidationError, SourceFormatError) as exc:
            too_large = len(data) > int(self.config["max_upload_bytes"])
            emit_event(
                EventType.upload_rejected,
                EventLevel.warning,
                str(exc),
                {"org_id": org_id, "upload_filename": filename, "size_bytes": len(data)},
                error_code=UPLOAD_TOO_LARGE if too_large else UPLOAD_FORMAT_REJECTED,
            )
            raise
        return self._summary(record)

    def import_file(
        self,
        org_id: str,
        path: Path,
        *,
        name: str | None = None,
        sheet: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create a dataset from a local file (name defaults to its stem)."""
        path = Path(path)
        if not path.is_file():
            raise ValidationError(f"File not found: {path}")
        return self.import_upload(
            org_id,
            name or path.stem,
            path.read_bytes(),
            path.name,
            sheet=sheet,
            description=description,
        )

    def connect_sheet(
        self,
        org_id: str,
        name: str,
        sheet_url: str,
        *,
        sheet: str | None = None,
        cell_range: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        record = self.registry.connect_sheet(
            org_id, name, sheet_url,
            sheet=sheet, cell_range=cell_range, description=description,
        )
        return self._summary(record)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_datasets(self, org_id: str) -> list[dict[str, Any]]:
        return [self._summary(r) for r in self.registry.list_datasets(org_id)]

    def get_dataset(self, org_id: str, dataset_id: str) -> dict[str, Any]:
        """Dataset record with its current schema and last ingest report."""
        record = self._owned(org_id, dataset_id)
        result = self._summary(record)
        result["schema"] = self.registry.get_schema(dataset_id).model_dump(mode="json")
        result["ingest_report"] = self.registry.get_ingest_report(dataset_id).model_dump(
            mode="json"
        )
        return result

    def get_rows(
        self,
        org_id: str,
        dataset_id: str,
        *,
        limit: int = 1000,
        offset: int = 0,
    ) -> dict[str, Any]:
        self._owned(org_id, dataset_id)
        rows, total = self.registry.get_rows(dataset_id, limit=limit, offset=offset)
        return {"rows": rows, "total": total, "limit": limit, "offset": offset}

    def aggregate(
        self,
        org_id: str,
        dataset_id: str,
        group_by: str,
        value_column: str,
        kind: str = AggregationKind.sum.value,
    ) -> list[dict[str, Any]]:
        self._owned(org_id, dataset_id)
        results = self.registry.aggregate_dataset(dataset_id, group_by, value_column, kind)
        return [r.model_dump() for r in results]

    def export(
        self,
        org_id: str,
        dataset_id: str,
        dest: Path,
        fmt: str | None = None,
    ) -> dict[str, Any]:
        """Write the current rows, typed per schema, to *dest*.

        The format defaults to the destination's extension.
        """
        self._owned(org_id, dataset_id)
        dest = Path(dest)
        fmt = (fmt or dest.suffix.lstrip(".") or "csv").lower()
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(
                f"Unsupported export format {fmt!r}. Available: {list(EXPORT_FORMATS)}"
            )
        df = self.registry.rows_frame(dataset_id)
        dest.parent.mkdir(parents=True, exist_ok=True)
        if fmt == "csv":
            df.write_csv(dest)
        elif fmt == "json":
            df.write_json(dest)
        else:
            df.write_parquet(dest)
        return {"path": str(dest), "format": fmt, "rows": df.height, "columns": df.width}

    # ------------------------------------------------------------------
    # Sync and delete
    # ------------------------------------------------------------------

    def sync_dataset(self, org_id: str, dataset_id: str) -> dict[str, Any]:
        self._owned(org_id, dataset_id)
        return self._summary(self.scheduler.resync_dataset(dataset_id))

    def run_due_syncs(self) -> dict[str, str]:
        return self.scheduler.run_due()

    def delete_dataset(self, org_id: str, dataset_id: str) -> dict[str, Any]:
        """Delete a dataset; unknown ids (or other orgs' ids) are a no-op."""
        try:
            self._owned(org_id, dataset_id)
        except DatasetNotFoundError:
            return {"dataset_id": dataset_id, "deleted": False}
        return {"dataset_id": dataset_id, "deleted": self.registry.delete_dataset(dataset_id)}

    # ------------------------------------------------------------------
    # Visualizations
    # ------------------------------------------------------------------

    def save_visualization(
        self,
        org_id: str,
        dataset_id: str,
        chart_type: str,
        config: ChartConfig,
    ) -> dict[str, Any]:
        self._owned(org_id, dataset_id)
        viz = self.visualizations.save_visualization(dataset_id, chart_type, config)
        return viz.model_dump(mode="json")

    def list_visualizations(self, org_id: str, dataset_id: str) -> list[dict[str, Any]]:
        """Saved visualizations, each flagged with any columns it has lost."""
        self._owned(org_id, dataset_id)
        result = []
        for viz in self.visualizations.list_visualizations(dataset_id):
            entry = viz.model_dump(mode="json")
            entry["stale_columns"] = self.visualizations.stale_columns(viz)
            result.append(entry)
        return result

    def render_visualization(
        self, org_id: str, dataset_id: str, viz_id: str
    ) -> dict[str, Any]:
        self._owned(org_id, dataset_id)
        viz = self.visualizations.get_visualization(dataset_id, viz_id)
        series = self.visualizations.render_series(viz)
        return {
            "visualization": viz.model_dump(mode="json"),
            "series": [r.model_dump() for r in series],
        }

    def delete_visualization(
        self, org_id: str, dataset_id: str, viz_id: str
    ) -> dict[str, Any]:
        self._owned(org_id, dataset_id)
        deleted = self.visualizations.delete_visualization(dataset_id, viz_id)
        return {"visualization_id": viz_id, "deleted": deleted}

    # ------------------------------------------------------------------
    # Event logs
    # ------------------------------------------------------------------

    def tail_events(
        self,
        scope: str = "global",
        scope_id: str | None = None,
        n: int = 200,
        *,
        level: str | None = None,
        event_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return the last *n* events for a scope, most-recent-first.

        Args:
            scope: One of "global", "dataset", "sync".
            scope_id: Required for the "dataset" and "sync" scopes.
            n: Maximum events to return (capped at 2000).
            level: Filter on level (global scope only).
            event_type: Filter on event type (global scope only).
        """
        sink = EventSink(
            self.workspace,
            tail_bytes=int(self.config["logging_tail_bytes"]),
        )
        n = min(n, 2000)
        if scope == "dataset":
            if not scope_id:
                return []
            return list(reversed(sink.read_dataset_log(scope_id)))[:n]
        if scope == "sync":
            if not scope_id:
                return []
            return list(reversed(sink.read_sync_log(scope_id)))[:n]
        return sink.read_global(level=level, event_type=event_type, limit=n)
