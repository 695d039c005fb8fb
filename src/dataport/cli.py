"""Command-line interface for dataport."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click

from dataport import __version__
from dataport.errors import DataportError

DEFAULT_ORG = "default"


@click.group()
@click.version_option(version=__version__, prog_name="dataport")
def main() -> None:
    """dataport -- spreadsheet ingestion, live sync and aggregation.

    Lifecycle: Import/Connect -> Sync -> Aggregate
    """


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _workspace_option(f):
    return click.option(
        "--workspace", "-w", "workspace", default=".",
        type=click.Path(exists=True, file_okay=False),
        help="Workspace directory.",
    )(f)


def _org_option(f):
    return click.option(
        "--org", "org_id", default=DEFAULT_ORG, show_default=True,
        help="Organization the datasets belong to.",
    )(f)


def _service(workspace: str):
    from dataport.service import DatasetService

    try:
        return DatasetService(Path(workspace))
    except DataportError as e:
        raise click.ClickException(str(e))


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _echo_dataset(ds: dict[str, Any]) -> None:
    sync = ds["sync"]
    status = sync["status"]
    if sync.get("reason"):
        status += f" ({sync['reason']})"
    click.echo(f"{ds['id']}  {ds['name']}")
    click.echo(f"  source:  {ds['source']['kind']} {ds['source'].get('filename') or ds['source']['locator']}")
    click.echo(f"  rows:    {ds['row_count']}")
    click.echo(f"  sync:    {status}")
    if ds.get("last_synced_at"):
        click.echo(f"  synced:  {ds['last_synced_at']}")


def _echo_event(evt: dict[str, Any]) -> None:
    ts = evt.get("ts", "")
    lvl = evt.get("level", "").upper()
    etype = evt.get("event_type", "")
    msg = evt.get("message", "")
    err = evt.get("error_code")
    line = f"[{ts}] {lvl:7s} {etype}: {msg}"
    if err:
        line += f"  ({err})"
    click.echo(line)


# ---------------------------------------------------------------------------
# Init
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path())
def init(directory: str) -> None:
    """Create a new workspace at DIRECTORY."""
    from dataport.config import scaffold_workspace

    try:
        result = scaffold_workspace(Path(directory))
    except FileExistsError as e:
        raise click.ClickException(str(e))
    click.echo(f"Created workspace at {result}")


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@main.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@_workspace_option
@_org_option
@click.option("--name", default=None, help="Dataset name (defaults to the file name).")
@click.option("--sheet", default=None, help="Worksheet to import (XLSX only).")
@click.option("--description", default=None, help="Free-text description.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def import_cmd(
    file: str,
    workspace: str,
    org_id: str,
    name: str | None,
    sheet: str | None,
    description: str | None,
    as_json: bool,
) -> None:
    """Import an XLSX or CSV FILE as a new dataset."""
    svc = _service(workspace)
    try:
        ds = svc.import_file(org_id, Path(file), name=name, sheet=sheet, description=description)
    except DataportError as e:
        raise click.ClickException(str(e))

    if as_json:
        _echo_json(ds)
        return
    click.echo(f"Imported {Path(file).name} -> {ds['id']}")
    report = svc.registry.get_ingest_report(ds["id"])
    click.echo(
        f"  {report.rows_kept} rows kept, {report.empty_rows_skipped} empty skipped, "
        f"{report.rows_padded} padded, {report.rows_truncated} truncated"
    )
    for idx, new_name in report.renamed_headers.items():
        click.echo(f"  Column {int(idx) + 1} renamed to {new_name!r}")
    for w in report.warnings:
        click.echo(f"  Warning: {w}", err=True)


@main.command()
@click.argument("sheet_url")
@_workspace_option
@_org_option
@click.option("--name", required=True, help="Dataset name.")
@click.option("--sheet", default=None, help="Sheet title within the document.")
@click.option("--range", "cell_range", default=None, help="A1 range, e.g. A1:F500.")
@click.option("--description", default=None, help="Free-text description.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def connect(
    sheet_url: str,
    workspace: str,
    org_id: str,
    name: str,
    sheet: str | None,
    cell_range: str | None,
    description: str | None,
    as_json: bool,
) -> None:
    """Connect a live sheet at SHEET_URL as a new dataset.

    The access token is read from DATAPORT_SHEETS_TOKEN.
    """
    svc = _service(workspace)
    try:
        ds = svc.connect_sheet(
            org_id, name, sheet_url,
            sheet=sheet, cell_range=cell_range, description=description,
        )
    except DataportError as e:
        raise click.ClickException(str(e))

    if as_json:
        _echo_json(ds)
    else:
        click.echo(f"Connected {ds['source']['locator']} -> {ds['id']} ({ds['row_count']} rows)")


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@main.command("list")
@_workspace_option
@_org_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def list_cmd(workspace: str, org_id: str, as_json: bool) -> None:
    """List datasets."""
    datasets = _service(workspace).list_datasets(org_id)
    if as_json:
        _echo_json(datasets)
        return
    if not datasets:
        click.echo("No datasets.")
        return
    for ds in datasets:
        click.echo(
            f"{ds['id']}  {ds['name']:30s} {ds['source']['kind']:13s} "
            f"{ds['row_count']:>8d} rows  {ds['sync']['status']}"
        )


@main.command()
@click.argument("dataset_id")
@_workspace_option
@_org_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def show(dataset_id: str, workspace: str, org_id: str, as_json: bool) -> None:
    """Show a dataset with its schema."""
    try:
        ds = _service(workspace).get_dataset(org_id, dataset_id)
    except DataportError as e:
        raise click.ClickException(str(e))

    if as_json:
        _echo_json(ds)
        return
    _echo_dataset(ds)
    click.echo("  columns:")
    for col in ds["schema"]["columns"]:
        click.echo(f"    {col['ordinal']:>3d}  {col['name']:30s} {col['inferred_type']}")


@main.command()
@click.argument("dataset_id")
@click.argument("group_by")
@click.argument("value_column")
@_workspace_option
@_org_option
@click.option(
    "--kind", default="sum", show_default=True,
    type=click.Choice(["sum", "avg", "count", "min", "max", "none"]),
    help="Aggregation to apply.",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def aggregate(
    dataset_id: str,
    group_by: str,
    value_column: str,
    workspace: str,
    org_id: str,
    kind: str,
    as_json: bool,
) -> None:
    """Aggregate VALUE_COLUMN of a dataset grouped by GROUP_BY."""
    try:
        results = _service(workspace).aggregate(org_id, dataset_id, group_by, value_column, kind)
    except DataportError as e:
        raise click.ClickException(str(e))

    if as_json:
        _echo_json(results)
        return
    for r in results:
        click.echo(f"{r['group_key'] or '(blank)':30s} {r['aggregated_value']:>14g}  n={r['member_count']}")


@main.command()
@click.argument("dataset_id")
@click.argument("dest", type=click.Path(dir_okay=False))
@_workspace_option
@_org_option
@click.option(
    "--format", "fmt", default=None,
    type=click.Choice(["csv", "json", "parquet"]),
    help="Output format (defaults to DEST's extension).",
)
def export(dataset_id: str, dest: str, workspace: str, org_id: str, fmt: str | None) -> None:
    """Export a dataset's current rows to DEST."""
    try:
        result = _service(workspace).export(org_id, dataset_id, Path(dest), fmt)
    except DataportError as e:
        raise click.ClickException(str(e))
    click.echo(f"Exported {result['rows']} rows x {result['columns']} columns to {result['path']}")


# ---------------------------------------------------------------------------
# Sync and delete
# ---------------------------------------------------------------------------


@main.command()
@click.argument("dataset_id", required=False)
@_workspace_option
@_org_option
@click.option("--due", is_flag=True, help="Sync every live dataset whose interval has elapsed.")
def sync(dataset_id: str | None, workspace: str, org_id: str, due: bool) -> None:
    """Re-sync a live dataset (or all due datasets with --due)."""
    svc = _service(workspace)
    if due:
        outcome = svc.run_due_syncs()
        if not outcome:
            click.echo("Nothing due.")
        for ds_id, status in outcome.items():
            click.echo(f"{ds_id}  {status}")
        if any(s == "error" for s in outcome.values()):
            sys.exit(1)
        return
    if not dataset_id:
        raise click.ClickException("DATASET_ID is required unless --due is given")

    try:
        ds = svc.sync_dataset(org_id, dataset_id)
    except DataportError as e:
        raise click.ClickException(str(e))
    click.echo(f"Synced {ds['id']}: {ds['row_count']} rows, schema {ds['schema_id']}")


@main.command()
@click.argument("dataset_id")
@_workspace_option
@_org_option
def delete(dataset_id: str, workspace: str, org_id: str) -> None:
    """Delete a dataset (no-op if it does not exist)."""
    result = _service(workspace).delete_dataset(org_id, dataset_id)
    if result["deleted"]:
        click.echo(f"Deleted {dataset_id}")
    else:
        click.echo(f"No dataset {dataset_id}; nothing to delete")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command("events")
@_workspace_option
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@click.option("--dataset", "dataset_id", default=None, help="Show the log of one dataset.")
@click.option("--sync-id", default=None, help="Show the log of one sync.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    workspace: str,
    level: str | None,
    event_type: str | None,
    dataset_id: str | None,
    sync_id: str | None,
    limit: int,
) -> None:
    """Show the structured event log."""
    svc = _service(workspace)
    if sync_id:
        events = svc.tail_events("sync", sync_id, limit)
    elif dataset_id:
        events = svc.tail_events("dataset", dataset_id, limit)
    else:
        events = svc.tail_events(level=level, event_type=event_type, n=limit)

    if not events:
        click.echo("No events found.")
        return
    for evt in events:
        _echo_event(evt)


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------


@main.command()
@_workspace_option
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--port", type=int, default=8000, help="Port to listen on.")
@click.option("--no-scheduler", is_flag=True, help="Don't run periodic syncs.")
@click.option("--poll", "poll_seconds", type=float, default=60.0, help="Seconds between due-sync checks.")
def serve(workspace: str, host: str, port: int, no_scheduler: bool, poll_seconds: float) -> None:
    """Serve the HTTP API for a workspace."""
    import uvicorn

    from dataport.api.server import create_app

    svc = _service(workspace)
    app = create_app(Path(workspace), service=svc)
    if not no_scheduler:
        svc.scheduler.start(poll_seconds)

    click.echo(f"Serving API at http://{host}:{port}/api")
    click.echo("Press Ctrl+C to stop")
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    except KeyboardInterrupt:
        click.echo("\nStopped.")
    finally:
        svc.scheduler.stop()


if __name__ == "__main__":
    main()
