"""Durable dataset storage with copy-then-swap generations.

Layout under ``<workspace>/datasets``::

    <dataset_id>/dataset.json                 current record (commit point)
    <dataset_id>/schemas/<schema_id>.json
    <dataset_id>/generations/<gen>/rows.json
    <dataset_id>/generations/<gen>/ingest_report.json
    <dataset_id>/visualizations/<viz_id>.json
    .staging/                                 in-flight writes, never read
    .trash/                                   deletions in progress

Readers only ever follow ``dataset.json``.  Writers hold ``<dataset_id>/.lock``
(a thread lock plus an exclusive ``flock``), so several processes may share
one workspace.  A new generation (and schema, on
drift) is fully written before ``dataset.json`` is atomically replaced to
point at it, so a crash at any step leaves the previous generation readable
and never pairs old rows with a new schema.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import threading
import uuid
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from dataport.errors import DatasetNotFoundError
from dataport.models import Dataset, IngestReport, Row, Schema
from dataport.utils.locks import locked_fd

_RECORD = "dataset.json"
_LOCK = ".lock"

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


def _atomic_json_write(path: Path, data: Any) -> None:
    """Write JSON to a file atomically via write-to-tmp then os.replace.

    Ensures that readers never observe a partially written file.

    Args:
        path: Destination file path.
        data: JSON-serializable data.
    """
    tmp_path = path.with_name(path.name + f".{uuid.uuid4().hex[:8]}.tmp")
    tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True, default=str))
    os.replace(str(tmp_path), str(path))


def next_generation(current: str | None) -> str:
    """Return the generation name following *current* (g0001, g0002, ...)."""
    if not current:
        return "g0001"
    return f"g{int(current[1:]) + 1:04d}"


class DatasetStore:
    """Filesystem persistence for dataset records, schemas and rows."""

    def __init__(self, workspace: Path) -> None:
        """Initialize the store.

        Args:
            workspace: Root of the dataport workspace.
        """
        self.datasets_dir = workspace / "datasets"
        self.staging_dir = self.datasets_dir / ".staging"
        self.trash_dir = self.datasets_dir / ".trash"
        for d in (self.datasets_dir, self.staging_dir, self.trash_dir):
            d.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Paths and locks
    # ------------------------------------------------------------------

    def dataset_dir(self, dataset_id: str) -> Path:
        return self.datasets_dir / dataset_id

    def _thread_lock(self, dataset_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(dataset_id)
            if lock is None:
                lock = self._locks[dataset_id] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, dataset_id: str) -> Iterator[None]:
        """Hold the dataset lock against other threads and other processes.

        The lock file lives inside the dataset directory, so a delete that
        renames the directory away also retires its lock.

        Raises:
            DatasetNotFoundError: If the dataset directory does not exist.
        """
        if not _SAFE_ID_RE.match(dataset_id):
            raise DatasetNotFoundError(dataset_id)
        with self._thread_lock(dataset_id), ExitStack() as stack:
            try:
                stack.enter_context(
                    locked_fd(self.dataset_dir(dataset_id) / _LOCK, os.O_RDWR | os.O_CREAT)
                )
            except (FileNotFoundError, NotADirectoryError):
                raise DatasetNotFoundError(dataset_id) from None
            yield

    def _stage_dir(self, label: str) -> Path:
        path = self.staging_dir / f"{label}-{uuid.uuid4().hex[:12]}"
        path.mkdir(parents=True)
        return path

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self, dataset_id: str) -> bool:
        return (self.dataset_dir(dataset_id) / _RECORD).exists()

    def load_record(self, dataset_id: str) -> Dataset:
        """Load the current record.

        Raises:
            DatasetNotFoundError: If the dataset does not exist.
        """
        if not _SAFE_ID_RE.match(dataset_id):
            raise DatasetNotFoundError(dataset_id)
        path = self.dataset_dir(dataset_id) / _RECORD
        try:
            raw = path.read_text()
        except (FileNotFoundError, NotADirectoryError):
            raise DatasetNotFoundError(dataset_id) from None
        return Dataset.model_validate_json(raw)

    def list_records(self) -> list[Dataset]:
        """Return all dataset records, oldest first."""
        records: list[Dataset] = []
        for d in sorted(self.datasets_dir.iterdir()):
            if d.name.startswith(".") or not d.is_dir():
                continue
            try:
                records.append(self.load_record(d.name))
            except DatasetNotFoundError:
                continue
        records.sort(key=lambda r: (r.created_at, r.id))
        return records

    def load_schema(self, dataset_id: str, schema_id: str) -> Schema:
        path = self.dataset_dir(dataset_id) / "schemas" / f"{schema_id}.json"
        try:
            return Schema.model_validate_json(path.read_text())
        except FileNotFoundError:
            raise DatasetNotFoundError(dataset_id) from None

    def load_rows(self, dataset_id: str, generation: str) -> list[Row]:
        path = self.dataset_dir(dataset_id) / "generations" / generation / "rows.json"
        try:
            return json.loads(path.read_text())
        except FileNotFoundError:
            raise DatasetNotFoundError(dataset_id) from None

    def load_report(self, dataset_id: str, generation: str) -> IngestReport:
        path = self.dataset_dir(dataset_id) / "generations" / generation / "ingest_report.json"
        try:
            return IngestReport.model_validate_json(path.read_text())
        except FileNotFoundError:
            raise DatasetNotFoundError(dataset_id) from None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        record: Dataset,
        schema: Schema,
        rows: list[Row],
        report: IngestReport,
    ) -> Dataset:
        """Persist a brand-new dataset in one atomic step.

        Everything is written into a staging directory which is then renamed
        into place, so a dataset is either fully present or absent.
        """
        stage = self._stage_dir(record.id)
        try:
            (stage / "schemas").mkdir()
            gen_dir = stage / "generations" / record.generation
            gen_dir.mkdir(parents=True)
            (stage / "visualizations").mkdir()
            _atomic_json_write(gen_dir / "rows.json", rows)
            _atomic_json_write(gen_dir / "ingest_report.json", report.model_dump(mode="json"))
            _atomic_json_write(stage / "schemas" / f"{schema.id}.json", schema.model_dump(mode="json"))
            _atomic_json_write(stage / _RECORD, record.model_dump(mode="json"))
            os.rename(str(stage), str(self.dataset_dir(record.id)))
        except BaseException:
            shutil.rmtree(stage, ignore_errors=True)
            raise
        return record

    def commit_generation(
        self,
        dataset_id: str,
        rows: list[Row],
        report: IngestReport,
        new_schema: Schema | None,
        update: Callable[[Dataset, str], Dataset],
    ) -> Dataset:
        """Swap in a new row generation (and optionally a new schema).

        Args:
            dataset_id: Target dataset.
            rows: The complete new row set.
            report: Ingest report for the new generation.
            new_schema: A new schema generation to attach, or None to keep
                the current schema.
            update: Called with (current record, new generation name) under
                the dataset lock; returns the record to commit.

        Returns:
            The committed record.

        Raises:
            DatasetNotFoundError: If the dataset was deleted meanwhile; the
                staged generation is discarded.
        """
        stage = self._stage_dir(f"{dataset_id}-gen")
        # Paths written into the live dataset directory before the commit point
        placed: list[Path] = []
        try:
            _atomic_json_write(stage / "rows.json", rows)
            _atomic_json_write(stage / "ingest_report.json", report.model_dump(mode="json"))

            with self._locked(dataset_id):
                current = self.load_record(dataset_id)
                generation = next_generation(current.generation)
                record = update(current, generation)
                ddir = self.dataset_dir(dataset_id)
                gen_dir = ddir / "generations" / generation
                os.rename(str(stage), str(gen_dir))
                placed.append(gen_dir)
                if new_schema is not None:
                    schema_path = ddir / "schemas" / f"{new_schema.id}.json"
                    placed.append(schema_path)
                    _atomic_json_write(schema_path, new_schema.model_dump(mode="json"))
                _atomic_json_write(ddir / _RECORD, record.model_dump(mode="json"))
        except BaseException:
            shutil.rmtree(stage, ignore_errors=True)
            for path in placed:
                if path.is_dir():
                    shutil.rmtree(path, ignore_errors=True)
                elif path.exists():
                    path.unlink()
            raise

        # Superseded generation and schema are unreachable now
        shutil.rmtree(ddir / "generations" / current.generation, ignore_errors=True)
        if new_schema is not None and current.schema_id != new_schema.id:
            old_schema = ddir / "schemas" / f"{current.schema_id}.json"
            if old_schema.exists():
                old_schema.unlink()
        return record

    def update_record(self, dataset_id: str, update: Callable[[Dataset], Dataset]) -> Dataset:
        """Atomically rewrite the record (rows and schema untouched).

        *update* runs under the dataset lock against the freshly loaded
        record, so it can act as a compare-and-set: raising from it leaves
        the record unchanged.

        Raises:
            DatasetNotFoundError: If the dataset does not exist.
        """
        with self._locked(dataset_id):
            record = update(self.load_record(dataset_id))
            _atomic_json_write(self.dataset_dir(dataset_id) / _RECORD, record.model_dump(mode="json"))
            return record

    def delete(self, dataset_id: str) -> bool:
        """Remove a dataset with everything it owns.

        The directory is first renamed out of ``datasets/`` (atomic), then
        removed.

        Returns:
            True if something was deleted, False if the id was absent.
        """
        try:
            with self._locked(dataset_id):
                ddir = self.dataset_dir(dataset_id)
                tomb = self.trash_dir / f"{dataset_id}-{uuid.uuid4().hex[:12]}"
                try:
                    os.rename(str(ddir), str(tomb))
                except FileNotFoundError:
                    return False
        except DatasetNotFoundError:
            return False
        shutil.rmtree(tomb, ignore_errors=True)
        return True

    def write_json(self, dataset_id: str, relpath: str, data: Any) -> None:
        """Atomically write an auxiliary JSON file inside a dataset directory."""
        with self._locked(dataset_id):
            if not self.exists(dataset_id):
                raise DatasetNotFoundError(dataset_id)
            path = self.dataset_dir(dataset_id) / relpath
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_json_write(path, data)
