"""FastAPI server for dataport.

Routes are thin wrappers over the shared :class:`DatasetService`; every
dataset route is scoped by the organization in its path.  Routes that touch
storage or a remote sheet are plain ``def`` so FastAPI runs them in its
threadpool; a slow sheet fetch never blocks the event loop.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dataport.errors import (
    AlreadySyncingError,
    AuthExpiredError,
    ConflictError,
    DatasetNotFoundError,
    DataportError,
    SourceFormatError,
    SourceUnavailableError,
    ValidationError,
)
from dataport.models import AggregationKind, ChartConfig
from dataport.service import DatasetService

# The singleton service is set at startup by ``create_app()``.
_service: DatasetService | None = None

_SAFE_LOG_ID = re.compile(r"^[A-Za-z0-9_\-]+$")


def create_app(workspace: Path, service: DatasetService | None = None) -> FastAPI:
    """Create the FastAPI application for a given workspace.

    Args:
        workspace: Root of the dataport workspace.
        service: Pre-built service (tests inject fakes through it).

    Returns:
        Configured FastAPI instance.
    """
    global _service
    _service = service or DatasetService(workspace)

    from dataport import __version__

    app = FastAPI(title="dataport", version=__version__)
    app.add_exception_handler(DataportError, _dataport_error_handler)
    app.include_router(_api_router())
    return app


def _svc() -> DatasetService:
    """Get the singleton service, raising if not initialised."""
    if _service is None:
        raise HTTPException(500, "Service not initialised")
    return _service


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def status_for(exc: DataportError) -> int:
    """HTTP status code for a dataport error."""
    if isinstance(exc, (ValidationError, SourceFormatError)):
        return 400
    if isinstance(exc, DatasetNotFoundError):
        return 404
    if isinstance(exc, (AlreadySyncingError, ConflictError)):
        return 409
    if isinstance(exc, AuthExpiredError):
        return 401
    if isinstance(exc, SourceUnavailableError):
        return 502
    return 500


async def _dataport_error_handler(request: Request, exc: DataportError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": str(exc), "code": exc.code},
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ConnectSheetRequest(BaseModel):
    name: str
    sheet_url: str
    sheet: str | None = None
    cell_range: str | None = None
    description: str | None = None


class AggregateRequest(BaseModel):
    group_by: str
    value_column: str
    kind: AggregationKind = AggregationKind.sum


class VisualizationRequest(BaseModel):
    chart_type: str
    config: ChartConfig


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def _api_router() -> APIRouter:
    router = APIRouter(prefix="/api")

    # -- Health --

    @router.get("/health")
    async def health() -> dict[str, Any]:
        from dataport import __version__

        return {"status": "ok", "version": __version__}

    # -- Datasets --

    @router.get("/orgs/{org_id}/datasets")
    def list_datasets(org_id: str) -> list[dict[str, Any]]:
        return _svc().list_datasets(org_id)

    @router.post("/orgs/{org_id}/datasets/upload", status_code=201)
    async def upload_dataset(
        org_id: str,
        file: UploadFile = File(...),
        name: str | None = Form(None),
        sheet: str | None = Form(None),
        description: str | None = Form(None),
    ) -> dict[str, Any]:
        fname = file.filename or ""
        data = await file.read()
        if len(data) == 0:
            raise HTTPException(400, "Uploaded file is empty")
        return await run_in_threadpool(
            _svc().import_upload,
            org_id,
            name or Path(fname).stem,
            data,
            fname,
            sheet=sheet or None,
            description=description or None,
        )

    @router.post("/orgs/{org_id}/datasets/sheets", status_code=201)
    def connect_sheet(org_id: str, req: ConnectSheetRequest) -> dict[str, Any]:
        return _svc().connect_sheet(
            org_id,
            req.name,
            req.sheet_url,
            sheet=req.sheet,
            cell_range=req.cell_range,
            description=req.description,
        )

    @router.get("/orgs/{org_id}/datasets/{dataset_id}")
    def get_dataset(org_id: str, dataset_id: str) -> dict[str, Any]:
        return _svc().get_dataset(org_id, dataset_id)

    @router.get("/orgs/{org_id}/datasets/{dataset_id}/rows")
    def get_rows(
        org_id: str,
        dataset_id: str,
        limit: int = Query(1000, ge=1, le=100_000),
        offset: int = Query(0, ge=0),
    ) -> dict[str, Any]:
        return _svc().get_rows(org_id, dataset_id, limit=limit, offset=offset)

    @router.post("/orgs/{org_id}/datasets/{dataset_id}/sync")
    def sync_dataset(org_id: str, dataset_id: str) -> dict[str, Any]:
        return _svc().sync_dataset(org_id, dataset_id)

    @router.delete("/orgs/{org_id}/datasets/{dataset_id}")
    def delete_dataset(org_id: str, dataset_id: str) -> dict[str, Any]:
        return _svc().delete_dataset(org_id, dataset_id)

    @router.post("/orgs/{org_id}/datasets/{dataset_id}/aggregate")
    def aggregate(org_id: str, dataset_id: str, req: AggregateRequest) -> list[dict[str, Any]]:
        return _svc().aggregate(
            org_id, dataset_id, req.group_by, req.value_column, req.kind.value
        )

    # -- Visualizations --

    @router.get("/orgs/{org_id}/datasets/{dataset_id}/visualizations")
    def list_visualizations(org_id: str, dataset_id: str) -> list[dict[str, Any]]:
        return _svc().list_visualizations(org_id, dataset_id)

    @router.post("/orgs/{org_id}/datasets/{dataset_id}/visualizations", status_code=201)
    def save_visualization(
        org_id: str, dataset_id: str, req: VisualizationRequest
    ) -> dict[str, Any]:
        return _svc().save_visualization(org_id, dataset_id, req.chart_type, req.config)

    @router.get("/orgs/{org_id}/datasets/{dataset_id}/visualizations/{viz_id}")
    def render_visualization(org_id: str, dataset_id: str, viz_id: str) -> dict[str, Any]:
        return _svc().render_visualization(org_id, dataset_id, viz_id)

    @router.delete("/orgs/{org_id}/datasets/{dataset_id}/visualizations/{viz_id}")
    def delete_visualization(org_id: str, dataset_id: str, viz_id: str) -> dict[str, Any]:
        return _svc().delete_visualization(org_id, dataset_id, viz_id)

    # -- Event logs --

    @router.get("/events")
    def tail_events(
        scope: str = Query("global"),
        id: str | None = Query(None),
        level: str | None = Query(None),
        event_type: str | None = Query(None),
        n: int = Query(200, ge=1, le=2000),
    ) -> list[dict[str, Any]]:
        """Event tail.  Scopes: global, dataset, sync (the latter two need ``id``)."""
        if scope not in ("global", "dataset", "sync"):
            raise HTTPException(400, f"Unknown scope {scope!r}")
        if scope != "global" and not id:
            raise HTTPException(400, f"scope={scope!r} requires id parameter")
        if id and not _SAFE_LOG_ID.match(id):
            raise HTTPException(400, "Invalid id")
        return _svc().tail_events(
            scope=scope, scope_id=id, n=n, level=level, event_type=event_type
        )

    return router
