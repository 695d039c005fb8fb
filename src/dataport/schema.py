"""Schema construction, header de-duplication and drift detection.

A schema is rebuilt from scratch on every ingestion; only its *identity* is
preserved across re-syncs, and only when the set of column names is
unchanged.  Old rows are never migrated column-by-column onto a new schema.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import Any, Callable, Sequence

from dataport.inference import infer_column_types, is_null
from dataport.models import Column, IngestReport, Row, Scalar, Schema


def new_schema_id() -> str:
    return uuid.uuid4().hex


def dedupe_headers(headers: Sequence[Any]) -> tuple[list[str], dict[str, str]]:
    """Make raw header cells usable as unique column names.

    Blank headers become ``column_<n>`` (1-based position).  Repeated names
    get a ``_2``, ``_3``, ... suffix; a suffix is skipped if that name is
    already taken elsewhere in the header row.

    Args:
        headers: Raw header cells as read from the source.

    Returns:
        Tuple of (unique column names, mapping of 0-based position to the
        new name for every header that had to change).
    """
    raw_names: list[str] = []
    for idx, raw in enumerate(headers):
        name = "" if raw is None else str(raw).strip()
        raw_names.append(name or f"column_{idx + 1}")

    taken = set(raw_names)
    seen: set[str] = set()
    result: list[str] = []
    renamed: dict[str, str] = {}
    for idx, name in enumerate(raw_names):
        final = name
        if name in seen:
            n = 2
            while f"{name}_{n}" in taken:
                n += 1
            final = f"{name}_{n}"
            taken.add(final)
        seen.add(final)
        result.append(final)
        raw = headers[idx]
        if final != ("" if raw is None else str(raw)):
            renamed[str(idx)] = final
    return result, renamed


def normalize_value(value: Any) -> Scalar:
    """Convert a raw cell into a storable scalar.

    Dates and times become ISO strings, blank strings become None and any
    other exotic type falls back to its string form.
    """
    if is_null(value):
        return None
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def materialize_rows(
    headers: Sequence[str],
    raw_rows: Sequence[Sequence[Any]],
    report: IngestReport,
) -> list[Row]:
    """Turn positional raw rows into row mappings keyed by column name.

    Fully empty rows are skipped.  Short rows are padded with None and long
    rows are truncated to the header width; both are counted in *report*.

    Args:
        headers: De-duplicated column names.
        raw_rows: Positional rows from a source adapter.
        report: Ingest report updated in place.

    Returns:
        Materialized rows.
    """
    width = len(headers)
    rows: list[Row] = []
    for raw in raw_rows:
        report.rows_read += 1
        cells = [normalize_value(v) for v in raw]
        if all(c is None for c in cells):
            report.empty_rows_skipped += 1
            continue
        if len(cells) < width:
            report.rows_padded += 1
            cells.extend([None] * (width - len(cells)))
        elif len(cells) > width:
            if any(c is not None for c in cells[width:]):
                report.rows_truncated += 1
            cells = cells[:width]
        rows.append(dict(zip(headers, cells)))
    report.rows_kept = len(rows)
    return rows


def build_schema(
    dataset_id: str,
    headers: Sequence[str],
    rows: Sequence[Row],
    *,
    threshold: float,
    sample_size: int,
    clock: Callable[[], datetime],
    schema_id: str | None = None,
) -> Schema:
    """Infer a schema for materialized rows.

    Ordinals follow header order and are always ``0..k-1``.
    """
    types = infer_column_types(
        headers, rows, threshold=threshold, sample_size=sample_size
    )
    columns = [
        Column(name=name, ordinal=idx, inferred_type=col_type)
        for idx, (name, col_type) in enumerate(zip(headers, types))
    ]
    return Schema(
        id=schema_id or new_schema_id(),
        dataset_id=dataset_id,
        columns=columns,
        created_at=clock(),
    )


def detect_drift(stored: Schema, fresh: Schema) -> bool:
    """Return True if the column *name sets* differ.

    Ordinal and type changes alone are not drift.
    """
    return set(stored.names) != set(fresh.names)


def describe_drift(stored: Schema, fresh: Schema) -> dict[str, list[str]]:
    """Summarise which column names were added and removed."""
    old, new = set(stored.names), set(fresh.names)
    return {
        "added": [n for n in fresh.names if n not in old],
        "removed": [n for n in stored.names if n not in new],
    }
