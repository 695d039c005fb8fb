"""Pydantic data model for datasets, schemas, sync state and aggregation."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

# A stored cell value.  Dates are normalised to ISO strings before storage.
Scalar = Union[bool, int, float, str, None]
Row = dict[str, Scalar]


# ────────────────────────────────────────────────────────────────
# Enums
# ────────────────────────────────────────────────────────────────


class SourceKind(str, Enum):
    static_upload = "static_upload"
    live_sheet = "live_sheet"


class ColumnType(str, Enum):
    numeric = "numeric"
    text = "text"
    date = "date"
    boolean = "boolean"


class SyncStatus(str, Enum):
    idle = "idle"
    syncing = "syncing"
    error = "error"


class AggregationKind(str, Enum):
    sum = "sum"
    avg = "avg"
    count = "count"
    min = "min"
    max = "max"
    none = "none"


# ────────────────────────────────────────────────────────────────
# Schema
# ────────────────────────────────────────────────────────────────


class Column(BaseModel):
    name: str
    ordinal: int = Field(ge=0)
    inferred_type: ColumnType


class Schema(BaseModel):
    """An ordered set of column descriptors belonging to one dataset."""

    id: str
    dataset_id: str
    columns: list[Column]
    created_at: datetime

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None


# ────────────────────────────────────────────────────────────────
# Dataset
# ────────────────────────────────────────────────────────────────


class SourceDescriptor(BaseModel):
    """Where a dataset's rows come from.

    ``locator`` is an upload handle for static uploads and the external
    document id for live sheets.
    """

    kind: SourceKind
    locator: str
    filename: Optional[str] = None
    sheet: Optional[str] = None
    cell_range: Optional[str] = None


class SyncState(BaseModel):
    """Persisted sync state; the only admission point for a resync.

    While ``syncing``, ``owner`` (``host:pid``) and ``lease_expires_at``
    identify the process running the sync so a stale claim can be told
    apart from a live one.
    """

    status: SyncStatus = SyncStatus.idle
    reason: Optional[str] = None
    updated_at: Optional[datetime] = None
    sync_id: Optional[str] = None
    owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None


class Dataset(BaseModel):
    id: str
    org_id: str
    name: str
    description: Optional[str] = None
    source: SourceDescriptor
    created_at: datetime
    last_synced_at: Optional[datetime] = None
    sync: SyncState = Field(default_factory=SyncState)
    schema_id: str
    generation: str
    row_count: int = 0
    # sha256 of the materialized rows; an unchanged fetch is not re-written
    content_hash: Optional[str] = None


class IngestReport(BaseModel):
    """Summary of one ingestion, persisted next to the generation it produced."""

    source_kind: SourceKind
    rows_read: int = 0
    rows_kept: int = 0
    empty_rows_skipped: int = 0
    rows_padded: int = 0
    rows_truncated: int = 0
    renamed_headers: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


# ────────────────────────────────────────────────────────────────
# Aggregation
# ────────────────────────────────────────────────────────────────


class AggregationRequest(BaseModel):
    group_by: str
    value_column: str
    kind: AggregationKind = AggregationKind.sum


class AggregationResult(BaseModel):
    group_key: str
    aggregated_value: float
    member_count: int


# ────────────────────────────────────────────────────────────────
# Saved visualizations
# ────────────────────────────────────────────────────────────────


class ChartConfig(BaseModel):
    group_by: str
    value_column: str
    aggregation: AggregationKind = AggregationKind.sum
    x_axis: Optional[str] = None
    y_axis: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)

    def referenced_columns(self) -> list[str]:
        cols = [self.group_by, self.value_column, self.x_axis, self.y_axis]
        seen: list[str] = []
        for c in cols:
            if c and c not in seen:
                seen.append(c)
        return seen


class Visualization(BaseModel):
    id: str
    dataset_id: str
    chart_type: str
    config: ChartConfig
    created_at: datetime
