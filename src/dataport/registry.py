"""Dataset registry: the aggregate root for imported datasets.

Owns one record per imported source together with its current schema and
row generation, and orchestrates source adapters, the column type
inferencer and durable storage.  Sync *state transitions* belong to
:class:`~dataport.scheduler.SyncScheduler`; the registry only performs the
fetch → infer → compare → swap sequence it is asked to run.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

import polars as pl

from dataport.aggregation import aggregate, to_number
from dataport.config import load_config
from dataport.errors import AlreadySyncingError, DatasetNotFoundError, ValidationError
from dataport.logging.events import (
    EventLevel,
    EventType,
    emit,
    make_dataset_event,
    make_sync_event,
)
from dataport.models import (
    AggregationKind,
    AggregationResult,
    ColumnType,
    Dataset,
    IngestReport,
    Row,
    Schema,
    SourceDescriptor,
    SourceKind,
    SyncState,
    SyncStatus,
)
from dataport.schema import (
    build_schema,
    dedupe_headers,
    describe_drift,
    detect_drift,
    materialize_rows,
)
from dataport.sources import (
    CredentialProvider,
    FetchResult,
    FileUploadStore,
    InMemoryCredentialProvider,
    UploadStore,
    build_adapter,
    parse_sheet_url,
    sniff_format,
)
from dataport.storage import DatasetStore, next_generation
from dataport.utils.hash import rows_fingerprint

_POLARS_TYPES = {
    ColumnType.numeric: pl.Float64,
    ColumnType.boolean: pl.Boolean,
    ColumnType.text: pl.Utf8,
    ColumnType.date: pl.Utf8,
}


def _utc_now() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


class DatasetRegistry:
    """Creates, re-syncs, reads and deletes datasets in a workspace."""

    def __init__(
        self,
        workspace: Path,
        *,
        config: dict[str, Any] | None = None,
        uploads: UploadStore | None = None,
        credentials: CredentialProvider | None = None,
        clock: Callable[[], datetime] | None = None,
        session: Any = None,
    ) -> None:
        """Initialize the registry.

        Args:
            workspace: Root of the dataport workspace.
            config: Workspace config; loaded from ``dataport.yaml`` if None.
            uploads: File-storage capability (defaults to local uploads dir).
            credentials: Delegated-credential capability for live sheets.
            clock: Returns the current time; UTC wall clock by default.
            session: ``requests``-compatible session for live-sheet fetches.
        """
        self.workspace = workspace
        self.config = config if config is not None else load_config(workspace)
        self.store = DatasetStore(workspace)
        self.uploads = uploads or FileUploadStore(workspace)
        self.credentials = credentials or InMemoryCredentialProvider()
        self.clock = clock or _utc_now
        self.session = session

    # ------------------------------------------------------------------
    # Ingestion helpers
    # ------------------------------------------------------------------

    def _materialize(
        self,
        dataset_id: str,
        source_kind: SourceKind,
        headers: Sequence[Any],
        raw_rows: Sequence[Sequence[Any]],
        warnings: Sequence[str] = (),
    ) -> tuple[list[str], list[Row], Schema, IngestReport]:
        report = IngestReport(source_kind=source_kind, warnings=list(warnings))
        names, renamed = dedupe_headers(headers)
        report.renamed_headers = renamed
        rows = materialize_rows(names, raw_rows, report)
        if not names:
            raise ValidationError("Source has no header row")
        if not rows:
            raise ValidationError("Source contains no data rows")
        schema = build_schema(
            dataset_id,
            names,
            rows,
            threshold=float(self.config["inference_threshold"]),
            sample_size=int(self.config["inference_sample_rows"]),
            clock=self.clock,
        )
        return names, rows, schema, report

    def _adapter(self, record: Dataset):
        return build_adapter(
            record.source,
            org_id=record.org_id,
            uploads=self.uploads,
            credentials=self.credentials,
            config=self.config,
            session=self.session,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_dataset(
        self,
        org_id: str,
        name: str,
        source: SourceDescriptor,
        rows: Sequence[Sequence[Any]],
        headers: Sequence[Any],
        *,
        description: str | None = None,
        warnings: Sequence[str] = (),
    ) -> Dataset:
        """Infer a schema and persist a new dataset with its first generation.

        Creation and first ingestion are one atomic step: on any error no
        dataset exists afterwards.

        Args:
            org_id: Owning organization.
            name: Display name (must not be blank; need not be unique).
            source: Where the rows came from.
            rows: Positional raw rows aligned with *headers*.
            headers: Raw header cells.
            description: Optional free text.
            warnings: Adapter warnings to record in the ingest report.

        Returns:
            The created dataset, in sync state ``idle``.

        Raises:
            ValidationError: Blank name or organization, no headers, or no
                non-empty rows.
        """
        if not org_id or not str(org_id).strip():
            raise ValidationError("Organization id is required")
        if not name or not name.strip():
            raise ValidationError("Dataset name is required")

        dataset_id = uuid.uuid4().hex
        names, mat_rows, schema, report = self._materialize(
            dataset_id, source.kind, headers, rows, warnings
        )
        now = self.clock()
        record = Dataset(
            id=dataset_id,
            org_id=org_id,
            name=name.strip(),
            description=description or None,
            source=source,
            created_at=now,
            last_synced_at=now if source.kind == SourceKind.live_sheet else None,
            sync=SyncState(status=SyncStatus.idle, updated_at=now),
            schema_id=schema.id,
            generation=next_generation(None),
            row_count=len(mat_rows),
            content_hash=rows_fingerprint(names, mat_rows),
        )
        self.store.create(record, schema, mat_rows, report)

        emit(make_dataset_event(
            EventType.dataset_created, EventLevel.info,
            f"Dataset {record.name!r} created with {len(mat_rows)} rows",
            dataset_id=dataset_id, org_id=org_id,
            extra={"source_kind": source.kind.value, "columns": len(names)},
        ))
        for warning in report.warnings:
            emit(make_dataset_event(
                EventType.ingest_warning, EventLevel.warning, warning,
                dataset_id=dataset_id, org_id=org_id,
            ))
        return record

    def import_upload(
        self,
        org_id: str,
        name: str,
        data: bytes,
        filename: str,
        *,
        sheet: str | None = None,
        description: str | None = None,
    ) -> Dataset:
        """Store an uploaded spreadsheet and create a dataset from it.

        Raises:
            ValidationError: Oversized upload, blank name, or no rows.
            SourceFormatError: Not an accepted container, or unparseable.
        """
        max_bytes = int(self.config["max_upload_bytes"])
        if len(data) > max_bytes:
            raise ValidationError(
                f"File too large (max {max_bytes // (1024 * 1024)} MB)"
            )
        if not name or not name.strip():
            raise ValidationError("Dataset name is required")
        sniff_format(data, filename)

        handle = self.uploads.save(data, filename)
        source = SourceDescriptor(
            kind=SourceKind.static_upload,
            locator=handle,
            filename=filename,
            sheet=sheet,
        )
        try:
            fetched: FetchResult = build_adapter(
                source,
                org_id=org_id,
                uploads=self.uploads,
                credentials=self.credentials,
                config=self.config,
            ).fetch_rows()
            return self.create_dataset(
                org_id, name, source, fetched.rows, fetched.headers,
                description=description, warnings=fetched.warnings,
            )
        except Exception:
            # Handles are content-addressed; another dataset may share this one
            if not self._upload_in_use(handle):
                self.uploads.delete(handle)
            raise

    def _upload_in_use(self, handle: str) -> bool:
        return any(
            r.source.kind == SourceKind.static_upload and r.source.locator == handle
            for r in self.store.list_records()
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
    ) -> Dataset:
        """Create a live dataset from an external sheet.

        Raises:
            ValidationError: Blank name or an empty sheet.
            SourceFormatError: Unrecognised sheet URL or payload.
            SourceUnavailableError: The sheet could not be fetched.
            AuthExpiredError: No valid credential for the document.
        """
        if not name or not name.strip():
            raise ValidationError("Dataset name is required")
        source = SourceDescriptor(
            kind=SourceKind.live_sheet,
            locator=parse_sheet_url(sheet_url),
            sheet=sheet,
            cell_range=cell_range,
        )
        fetched = build_adapter(
            source,
            org_id=org_id,
            uploads=self.uploads,
            credentials=self.credentials,
            config=self.config,
            session=self.session,
        ).fetch_rows()
        return self.create_dataset(
            org_id, name, source, fetched.rows, fetched.headers,
            description=description, warnings=fetched.warnings,
        )

    # ------------------------------------------------------------------
    # Resync (state transitions belong to the sync scheduler)
    # ------------------------------------------------------------------

    def resync_dataset(self, dataset_id: str, *, sync_id: str | None = None) -> Dataset:
        """Re-fetch a live dataset and swap in the fresh generation.

        If the fresh column name set equals the stored one, the schema id is
        kept and only rows are replaced; otherwise a new schema generation is
        attached.  A fetch whose rows are identical to the current generation
        writes nothing.  The sync state is left untouched.

        Args:
            dataset_id: Dataset to re-fetch.
            sync_id: Attribution id for drift and warning events.

        Returns:
            The current record after the swap.

        Raises:
            DatasetNotFoundError: Unknown id, or deleted during the fetch.
            ValidationError: Static uploads cannot be re-synced, or the
                source returned no rows.
            SourceUnavailableError: Network, timeout or auth failure.
            SourceFormatError: Unparseable source content.
        """
        sync_id = sync_id or uuid.uuid4().hex
        record = self.store.load_record(dataset_id)
        if record.source.kind != SourceKind.live_sheet:
            raise ValidationError(
                f"Dataset {dataset_id!r} is a static upload and cannot be re-synced"
            )

        fetched = self._adapter(record).fetch_rows()
        names, rows, fresh, report = self._materialize(
            dataset_id, record.source.kind, fetched.headers, fetched.rows, fetched.warnings
        )
        stored = self.store.load_schema(dataset_id, record.schema_id)
        drift = detect_drift(stored, fresh)
        content_hash = rows_fingerprint(names, rows)

        for warning in report.warnings:
            emit(make_sync_event(
                EventType.ingest_warning, EventLevel.warning, warning,
                dataset_id=dataset_id, sync_id=sync_id,
            ))

        if not drift and content_hash == record.content_hash:
            return record

        def _commit(rec: Dataset, generation: str) -> Dataset:
            if rec.sync.status == SyncStatus.syncing and rec.sync.sync_id not in (None, sync_id):
                # Claimed by another sync while this one was fetching
                raise AlreadySyncingError(dataset_id)
            return rec.model_copy(update={
                "generation": generation,
                "row_count": len(rows),
                "content_hash": content_hash,
                "schema_id": fresh.id if drift else rec.schema_id,
            })

        committed = self.store.commit_generation(
            dataset_id, rows, report, fresh if drift else None, _commit
        )
        if drift:
            emit(make_sync_event(
                EventType.schema_drift, EventLevel.warning,
                f"Column set changed; attached schema {fresh.id}",
                dataset_id=dataset_id, sync_id=sync_id,
                extra={**describe_drift(stored, fresh), "previous_schema_id": stored.id},
            ))
        return committed

    def update_sync(
        self,
        dataset_id: str,
        state: SyncState,
        *,
        synced_at: datetime | None = None,
    ) -> Dataset:
        """Persist a sync state (and optionally ``last_synced_at``).

        Rows and schema are untouched.
        """
        update: dict[str, Any] = {"sync": state}
        if synced_at is not None:
            update["last_synced_at"] = synced_at
        return self.store.update_record(
            dataset_id, lambda rec: rec.model_copy(update=update)
        )

    def claim_sync(
        self,
        dataset_id: str,
        state: SyncState,
        *,
        holder_alive: Callable[[SyncState], bool],
    ) -> Dataset:
        """Compare-and-set the persisted state to *state* (``syncing``).

        ``idle`` and ``error`` are always admitted; ``syncing`` only when
        *holder_alive* says its owner is gone.

        Raises:
            AlreadySyncingError: A live sync holds the dataset.
            DatasetNotFoundError: Unknown id.
        """
        def _claim(rec: Dataset) -> Dataset:
            if rec.sync.status == SyncStatus.syncing and holder_alive(rec.sync):
                raise AlreadySyncingError(dataset_id)
            return rec.model_copy(update={"sync": state})

        return self.store.update_record(dataset_id, _claim)

    def finish_sync(
        self,
        dataset_id: str,
        sync_id: str | None,
        state: SyncState,
        *,
        synced_at: datetime | None = None,
    ) -> Dataset | None:
        """Leave ``syncing`` if sync *sync_id* still holds the dataset.

        Returns:
            The updated record, or None if the dataset was no longer held by
            *sync_id* (finished, recovered or re-claimed meanwhile).
        """
        applied = False

        def _finish(rec: Dataset) -> Dataset:
            nonlocal applied
            if rec.sync.status != SyncStatus.syncing or rec.sync.sync_id != sync_id:
                return rec
            applied = True
            update: dict[str, Any] = {"sync": state}
            if synced_at is not None:
                update["last_synced_at"] = synced_at
            return rec.model_copy(update=update)

        record = self.store.update_record(dataset_id, _finish)
        return record if applied else None

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_dataset(self, dataset_id: str) -> bool:
        """Delete a dataset with its schemas, rows and visualizations.

        Idempotent: deleting an absent id is a successful no-op.

        Returns:
            True if a dataset was removed, False if it did not exist.
        """
        try:
            record = self.store.load_record(dataset_id)
        except DatasetNotFoundError:
            return False
        deleted = self.store.delete(dataset_id)
        if deleted:
            emit(make_dataset_event(
                EventType.dataset_deleted, EventLevel.info,
                f"Dataset {record.name!r} deleted",
                dataset_id=dataset_id, org_id=record.org_id,
            ))
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_dataset(self, dataset_id: str) -> Dataset:
        return self.store.load_record(dataset_id)

    def list_datasets(self, org_id: str | None = None) -> list[Dataset]:
        records = self.store.list_records()
        if org_id is not None:
            records = [r for r in records if r.org_id == org_id]
        return records

    def get_schema(self, dataset_id: str) -> Schema:
        record, schema, _ = self._read_current(dataset_id, with_rows=False)
        return schema

    def get_ingest_report(self, dataset_id: str) -> IngestReport:
        for _ in range(3):
            record = self.store.load_record(dataset_id)
            try:
                return self.store.load_report(dataset_id, record.generation)
            except DatasetNotFoundError:
                continue
        raise DatasetNotFoundError(dataset_id)

    def _read_current(
        self, dataset_id: str, *, with_rows: bool = True
    ) -> tuple[Dataset, Schema, list[Row]]:
        """Read record, schema and rows of one consistent generation.

        A concurrent commit may remove the generation between reading the
        record and reading its files; the read is then retried against the
        new record.
        """
        for _ in range(3):
            record = self.store.load_record(dataset_id)
            try:
                schema = self.store.load_schema(dataset_id, record.schema_id)
                rows = self.store.load_rows(dataset_id, record.generation) if with_rows else []
            except DatasetNotFoundError:
                continue
            return record, schema, rows
        raise DatasetNotFoundError(dataset_id)

    def get_rows(
        self,
        dataset_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> tuple[list[Row], int]:
        """Return a page of rows and the total row count.

        Args:
            dataset_id: Dataset to read.
            limit: Maximum rows to return; all when None.
            offset: Rows to skip.

        Returns:
            Tuple of (rows, total).
        """
        if offset < 0 or (limit is not None and limit < 0):
            raise ValidationError("limit and offset must be non-negative")
        _, _, rows = self._read_current(dataset_id)
        end = None if limit is None else offset + limit
        return rows[offset:end], len(rows)

    def rows_frame(self, dataset_id: str) -> pl.DataFrame:
        """Materialize the current rows as a DataFrame cast per schema.

        Values that do not fit their column type become null.
        """
        _, schema, rows = self._read_current(dataset_id)
        return pl.DataFrame(
            {
                col.name: [_cast(row.get(col.name), col.inferred_type) for row in rows]
                for col in schema.columns
            },
            schema={col.name: _POLARS_TYPES[col.inferred_type] for col in schema.columns},
        )

    def aggregate_dataset(
        self,
        dataset_id: str,
        group_by: str,
        value_column: str,
        kind: AggregationKind | str = AggregationKind.sum,
    ) -> list[AggregationResult]:
        """Aggregate the current rows of a dataset.

        Raises:
            ValidationError: Unknown aggregation kind, or a column that is
                not in the dataset's current schema.
        """
        try:
            kind = AggregationKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown aggregation kind {kind!r}") from None
        _, schema, rows = self._read_current(dataset_id)
        missing = [c for c in (group_by, value_column) if schema.column(c) is None]
        if missing:
            raise ValidationError(
                f"Unknown column(s) {missing}. Available: {schema.names}"
            )
        return aggregate(rows, group_by, value_column, kind)


def _cast(value: Any, col_type: ColumnType) -> Any:
    """Best-effort conversion of a stored value to its column's type."""
    if value is None:
        return None
    if col_type == ColumnType.numeric:
        return to_number(value)
    if col_type == ColumnType.boolean:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "yes"):
            return True
        if text in ("false", "no"):
            return False
        return None
    return str(value)
