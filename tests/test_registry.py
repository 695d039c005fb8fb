"""Tests for the dataset registry: create, resync, delete and reads."""

from __future__ import annotations

import json

import pytest

from dataport.errors import (
    DatasetNotFoundError,
    SourceFormatError,
    SourceUnavailableError,
    ValidationError,
)
from dataport.models import (
    AggregationKind,
    ColumnType,
    SourceDescriptor,
    SourceKind,
    SyncStatus,
)

SALES_CSV = b"Region,Revenue,Active\nEast,10,yes\nWest,5,no\nEast,abc,yes\nEast,10,no\n"


def _static_source() -> SourceDescriptor:
    return SourceDescriptor(kind=SourceKind.static_upload, locator="inline")


@pytest.fixture
def live(registry, sheet_session, sheet_url):
    """A connected live dataset with three rows."""
    sheet_session.values = [["Region", "Revenue"], ["East", 10], ["West", 5], ["East", 7]]
    return registry.connect_sheet("acme", "Live sales", sheet_url)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreateDataset:
    def test_create_from_rows(self, registry, clock) -> None:
        ds = registry.create_dataset(
            "acme", "Sales", _static_source(),
            rows=[["East", 10], ["West", 5]], headers=["Region", "Revenue"],
        )
        assert ds.org_id == "acme"
        assert ds.row_count == 2
        assert ds.sync.status == SyncStatus.idle
        assert ds.created_at == clock()
        assert ds.last_synced_at is None

        schema = registry.get_schema(ds.id)
        assert schema.id == ds.schema_id
        assert [(c.name, c.ordinal, c.inferred_type) for c in schema.columns] == [
            ("Region", 0, ColumnType.text),
            ("Revenue", 1, ColumnType.numeric),
        ]

    def test_blank_name_rejected(self, registry) -> None:
        with pytest.raises(ValidationError, match="name"):
            registry.create_dataset("acme", "  ", _static_source(), [[1]], ["a"])
        assert registry.list_datasets() == []

    def test_no_rows_rejected(self, registry) -> None:
        with pytest.raises(ValidationError, match="no data rows"):
            registry.create_dataset("acme", "Empty", _static_source(), [], ["a", "b"])
        assert registry.list_datasets() == []

    def test_only_empty_rows_rejected(self, registry) -> None:
        with pytest.raises(ValidationError):
            registry.create_dataset("acme", "Blank", _static_source(), [[None], [""]], ["a"])

    def test_no_headers_rejected(self, registry) -> None:
        with pytest.raises(ValidationError):
            registry.create_dataset("acme", "NoHead", _static_source(), [[1]], [])

    def test_duplicate_names_allowed(self, registry) -> None:
        a = registry.create_dataset("acme", "Same", _static_source(), [[1]], ["x"])
        b = registry.create_dataset("acme", "Same", _static_source(), [[2]], ["x"])
        assert a.id != b.id
        assert len(registry.list_datasets("acme")) == 2

    def test_duplicate_headers_disambiguated(self, registry) -> None:
        ds = registry.create_dataset(
            "acme", "Dupes", _static_source(), [[1, 2, 3]], ["Amount", "Amount", None]
        )
        assert registry.get_schema(ds.id).names == ["Amount", "Amount_2", "column_3"]
        report = registry.get_ingest_report(ds.id)
        assert report.renamed_headers == {"1": "Amount_2", "2": "column_3"}

    def test_ingest_report(self, registry) -> None:
        ds = registry.create_dataset(
            "acme", "Ragged", _static_source(),
            [[1, 2], [None, None], [3], [4, 5, 6]], ["a", "b"],
        )
        report = registry.get_ingest_report(ds.id)
        assert report.rows_read == 4
        assert report.rows_kept == 3
        assert report.empty_rows_skipped == 1
        assert report.rows_padded == 1
        assert report.rows_truncated == 1


class TestImportUpload:
    def test_csv_upload(self, registry) -> None:
        ds = registry.import_upload("acme", "Sales", SALES_CSV, "sales.csv")
        assert ds.source.kind == SourceKind.static_upload
        assert ds.source.filename == "sales.csv"
        assert ds.row_count == 4
        types = {c.name: c.inferred_type for c in registry.get_schema(ds.id).columns}
        assert types == {
            "Region": ColumnType.text,
            "Revenue": ColumnType.text,  # 3 of 4 numeric is below 0.9
            "Active": ColumnType.boolean,
        }

    def test_xlsx_upload_named_sheet(self, registry, make_xlsx) -> None:
        path = make_xlsx({"Cover": [["title"], ["x"]], "Data": [["k", "v"], ["a", 1], ["b", 2]]})
        ds = registry.import_upload("acme", "Book", path.read_bytes(), "book.xlsx", sheet="Data")
        rows, total = registry.get_rows(ds.id)
        assert total == 2
        assert rows == [{"k": "a", "v": 1}, {"k": "b", "v": 2}]

    def test_xlsx_dates_stored_as_iso(self, registry, make_xlsx) -> None:
        from datetime import datetime

        path = make_xlsx({"S": [["when", "n"], [datetime(2024, 1, 2), 1]]})
        ds = registry.import_upload("acme", "Dates", path.read_bytes(), "d.xlsx")
        rows, _ = registry.get_rows(ds.id)
        assert rows[0]["when"] == "2024-01-02T00:00:00"
        assert registry.get_schema(ds.id).column("when").inferred_type == ColumnType.date

    def test_oversized_upload(self, registry) -> None:
        registry.config["max_upload_bytes"] = 10
        with pytest.raises(ValidationError, match="too large"):
            registry.import_upload("acme", "Big", SALES_CSV, "big.csv")

    def test_unsupported_format(self, registry) -> None:
        with pytest.raises(SourceFormatError):
            registry.import_upload("acme", "Doc", b"%PDF-1.4", "file.pdf")
        assert registry.list_datasets() == []

    def test_header_only_csv(self, registry) -> None:
        with pytest.raises(ValidationError):
            registry.import_upload("acme", "Head", b"a,b\n", "h.csv")

    def test_failed_import_leaves_no_upload(self, registry) -> None:
        with pytest.raises(ValidationError):
            registry.import_upload("acme", "Head", b"a,b\n", "h.csv")
        assert list(registry.uploads.uploads_dir.iterdir()) == []

    def test_failed_import_keeps_shared_upload(self, registry, make_xlsx) -> None:
        data = make_xlsx({"Data": [["k", "v"], ["a", 1]]}).read_bytes()
        ds = registry.import_upload("acme", "Book", data, "book.xlsx")
        with pytest.raises(SourceFormatError):
            registry.import_upload("acme", "Again", data, "book.xlsx", sheet="Missing")
        assert registry.uploads.read(ds.source.locator) == data


# ---------------------------------------------------------------------------
# Resync
# ---------------------------------------------------------------------------


class TestResync:
    def test_connect_sets_last_synced(self, live, clock) -> None:
        assert live.source.kind == SourceKind.live_sheet
        assert live.last_synced_at == clock()
        assert live.row_count == 3

    def test_name_stable_resync_keeps_schema_id(self, registry, live, sheet_session) -> None:
        sheet_session.values = [["Revenue", "Region"], [1, "North"]]
        after = registry.resync_dataset(live.id)
        assert after.schema_id == live.schema_id
        assert after.generation != live.generation
        rows, total = registry.get_rows(live.id)
        assert total == 1
        assert rows == [{"Revenue": 1, "Region": "North"}]

    def test_drift_attaches_new_schema(self, registry, live, sheet_session) -> None:
        sheet_session.values = [["Region", "Revenue", "Units"], ["East", 10, 3]]
        after = registry.resync_dataset(live.id)
        assert after.schema_id != live.schema_id
        assert registry.get_schema(live.id).names == ["Region", "Revenue", "Units"]
        # Superseded schema file is gone
        old = registry.store.dataset_dir(live.id) / "schemas" / f"{live.schema_id}.json"
        assert not old.exists()

    def test_unchanged_content_writes_nothing(self, registry, live, sheet_session) -> None:
        after = registry.resync_dataset(live.id)
        assert after.generation == live.generation
        assert after.content_hash == live.content_hash

    def test_resync_leaves_sync_state(self, registry, live, sheet_session, clock) -> None:
        clock.advance(hours=1)
        sheet_session.values = [["Region", "Revenue"], ["East", 1]]
        after = registry.resync_dataset(live.id)
        assert after.sync.status == SyncStatus.idle
        assert after.last_synced_at == live.last_synced_at

    def test_failed_fetch_keeps_rows(self, registry, live, sheet_session) -> None:
        sheet_session.status = 500
        with pytest.raises(SourceUnavailableError):
            registry.resync_dataset(live.id)
        rows, total = registry.get_rows(live.id)
        assert total == 3
        assert registry.get_dataset(live.id).schema_id == live.schema_id

    def test_empty_fetch_keeps_rows(self, registry, live, sheet_session) -> None:
        sheet_session.values = [["Region", "Revenue"]]
        with pytest.raises(ValidationError):
            registry.resync_dataset(live.id)
        assert registry.get_rows(live.id)[1] == 3

    def test_static_upload_cannot_resync(self, registry) -> None:
        ds = registry.import_upload("acme", "Sales", SALES_CSV, "sales.csv")
        with pytest.raises(ValidationError, match="static upload"):
            registry.resync_dataset(ds.id)

    def test_unknown_dataset(self, registry) -> None:
        with pytest.raises(DatasetNotFoundError):
            registry.resync_dataset("doesnotexist")

    def test_delete_during_fetch_discards_generation(self, registry, live, sheet_session) -> None:
        sheet_session.values = [["Region", "Revenue"], ["East", 99]]
        sheet_session.on_get = lambda: registry.delete_dataset(live.id)
        with pytest.raises(DatasetNotFoundError):
            registry.resync_dataset(live.id)
        assert not registry.store.exists(live.id)
        assert list(registry.store.staging_dir.iterdir()) == []

    def test_drift_event_logged(self, registry, live, sheet_session, workspace) -> None:
        sheet_session.values = [["Region", "Units"], ["East", 3]]
        registry.resync_dataset(live.id, sync_id="sync1")
        lines = (workspace / "logs" / "sync" / "sync1.ndjson").read_text().splitlines()
        [event] = [json.loads(l) for l in lines if "schema_drift" in l]
        assert event["context"]["added"] == ["Units"]
        assert event["context"]["removed"] == ["Revenue"]

    def test_failed_record_write_rolls_back_generation(
        self, registry, live, sheet_session, monkeypatch
    ) -> None:
        import dataport.storage as storage_mod

        real_write = storage_mod._atomic_json_write

        def _failing_write(path, data):
            if path.name == "dataset.json":
                raise OSError("disk full")
            real_write(path, data)

        monkeypatch.setattr(storage_mod, "_atomic_json_write", _failing_write)
        sheet_session.values = [["Region", "Units"], ["East", 3]]
        with pytest.raises(OSError):
            registry.resync_dataset(live.id)

        ddir = registry.store.dataset_dir(live.id)
        assert [p.name for p in (ddir / "generations").iterdir()] == [live.generation]
        assert [p.name for p in (ddir / "schemas").iterdir()] == [f"{live.schema_id}.json"]
        assert list(registry.store.staging_dir.iterdir()) == []
        assert registry.get_rows(live.id)[1] == 3


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete_removes_everything(self, registry, workspace) -> None:
        ds = registry.import_upload("acme", "Sales", SALES_CSV, "sales.csv")
        assert registry.delete_dataset(ds.id) is True
        with pytest.raises(DatasetNotFoundError):
            registry.get_dataset(ds.id)
        assert not (workspace / "datasets" / ds.id).exists()
        assert list(registry.store.trash_dir.iterdir()) == []

    def test_delete_unknown_is_noop(self, registry) -> None:
        assert registry.delete_dataset("nope") is False
        assert registry.delete_dataset("../etc") is False

    def test_delete_twice(self, registry) -> None:
        ds = registry.import_upload("acme", "Sales", SALES_CSV, "sales.csv")
        assert registry.delete_dataset(ds.id) is True
        assert registry.delete_dataset(ds.id) is False


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    def test_list_filters_by_org(self, registry) -> None:
        a = registry.create_dataset("acme", "A", _static_source(), [[1]], ["x"])
        registry.create_dataset("globex", "B", _static_source(), [[1]], ["x"])
        assert [d.id for d in registry.list_datasets("acme")] == [a.id]
        assert len(registry.list_datasets()) == 2

    def test_paging(self, registry) -> None:
        ds = registry.create_dataset(
            "acme", "Many", _static_source(), [[i] for i in range(10)], ["n"]
        )
        rows, total = registry.get_rows(ds.id, limit=3, offset=4)
        assert total == 10
        assert [r["n"] for r in rows] == [4, 5, 6]
        rows, _ = registry.get_rows(ds.id, offset=20)
        assert rows == []

    def test_negative_paging_rejected(self, registry) -> None:
        ds = registry.create_dataset("acme", "A", _static_source(), [[1]], ["x"])
        with pytest.raises(ValidationError):
            registry.get_rows(ds.id, offset=-1)

    def test_path_like_id_not_found(self, registry) -> None:
        with pytest.raises(DatasetNotFoundError):
            registry.get_dataset("../../etc")

    def test_rows_frame_typed(self, registry) -> None:
        import polars as pl

        ds = registry.create_dataset(
            "acme", "Typed", _static_source(),
            [["East", "10", "yes"], ["West", 5, "no"]],
            ["Region", "Revenue", "Active"],
        )
        df = registry.rows_frame(ds.id)
        assert df.columns == ["Region", "Revenue", "Active"]
        assert df.schema["Revenue"] == pl.Float64
        assert df.schema["Active"] == pl.Boolean
        assert df["Revenue"].to_list() == [10.0, 5.0]
        assert df["Active"].to_list() == [True, False]


class TestAggregateDataset:
    def test_avg_by_region(self, registry) -> None:
        ds = registry.import_upload("acme", "Sales", SALES_CSV, "sales.csv")
        results = registry.aggregate_dataset(ds.id, "Region", "Revenue", AggregationKind.avg)
        east = next(r for r in results if r.group_key == "East")
        assert east.aggregated_value == 10
        assert east.member_count == 3

    def test_unknown_column(self, registry) -> None:
        ds = registry.import_upload("acme", "Sales", SALES_CSV, "sales.csv")
        with pytest.raises(ValidationError, match="Unknown column"):
            registry.aggregate_dataset(ds.id, "Region", "Profit")

    def test_unknown_kind(self, registry) -> None:
        ds = registry.import_upload("acme", "Sales", SALES_CSV, "sales.csv")
        with pytest.raises(ValidationError, match="kind"):
            registry.aggregate_dataset(ds.id, "Region", "Revenue", "median")
