# Copyright (c) Syntropy Systems
"""FastAPI application exposing the batch scheduler."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
import io
from typing import TYPE_CHECKING, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response

from sweeplab.config import SweeplabConfig, get_db_path
from sweeplab.db import SnapshotStore
from sweeplab.errors import BatchNotFoundError, ConfigurationError, SchedulerStateError
from sweeplab.export import export_payload, write_csv_rows
from sweeplab.models import BatchSummary, TaskStatus
from sweeplab.scheduler import Scheduler

from .models import (
    BatchCreate,
    BatchListResponse,
    BatchResponse,
    ErrorResponse,
    HealthResponse,
    TaskListResponse,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)


def get_scheduler(request: Request) -> Scheduler:
    """Get the scheduler owned by the app."""
    return request.app.state.scheduler


def _error(status_code: int, detail: str, error_code: str) -> JSONResponse:
    body = ErrorResponse(detail=detail, error_code=error_code)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(
    scheduler: Optional[Scheduler] = None,
    config: Optional[SweeplabConfig] = None,
    project_dir: Optional[Path] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        scheduler: Scheduler to expose; built from ``config`` when omitted
        config: Configuration used to build the scheduler and its provider
        project_dir: When set, batches are saved to the project's database

    Returns:
        Configured FastAPI application
    """
    if scheduler is None:
        scheduler = Scheduler.from_config(config or SweeplabConfig())

    store: Optional[SnapshotStore] = None
    if project_dir is not None:
        store = SnapshotStore(get_db_path(project_dir))
        _ = scheduler.subscribe(store.record)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        logger.info("Shutting down, stopping active batches")
        scheduler.shutdown()
        scheduler.provider.close()
        if store is not None:
            store.close()

    app = FastAPI(
        title="sweeplab server",
        description="Prompt parameter sweeps over HTTP",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.scheduler = scheduler

    # --- Error mapping ---

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        return _error(422, str(exc), "invalid_configuration")

    @app.exception_handler(SchedulerStateError)
    async def state_error(request: Request, exc: SchedulerStateError) -> JSONResponse:
        return _error(409, str(exc), "invalid_transition")

    @app.exception_handler(BatchNotFoundError)
    async def not_found(request: Request, exc: BatchNotFoundError) -> JSONResponse:
        return _error(404, str(exc), "batch_not_found")

    # --- Batch Endpoints ---

    @app.post("/batches", response_model=BatchResponse, status_code=201)
    def create_batch(request: BatchCreate, sched: Scheduler = Depends(get_scheduler)):
        """Create a batch, and optionally start it."""
        batch_id = sched.create_batch(
            prompt=request.prompt,
            specs=[spec.model_dump() for spec in request.specs],
            iterations=request.iterations,
            name=request.name,
            model=request.model,
            weights=request.weights,
        )
        if request.start:
            return BatchResponse(batch=sched.start(batch_id))
        return BatchResponse(batch=sched.get_progress(batch_id))

    @app.get("/batches", response_model=BatchListResponse)
    def list_batches(sched: Scheduler = Depends(get_scheduler)):
        """List every batch."""
        batches = sched.list_batches()
        return BatchListResponse(batches=batches, count=len(batches))

    @app.get("/batches/{batch_id}", response_model=BatchResponse)
    def get_batch(batch_id: str, sched: Scheduler = Depends(get_scheduler)):
        """Status and progress of a batch."""
        return BatchResponse(batch=sched.get_progress(batch_id))

    @app.post("/batches/{batch_id}/start", response_model=BatchResponse)
    def start_batch(batch_id: str, sched: Scheduler = Depends(get_scheduler)):
        return BatchResponse(batch=sched.start(batch_id))

    @app.post("/batches/{batch_id}/pause", response_model=BatchResponse)
    def pause_batch(batch_id: str, sched: Scheduler = Depends(get_scheduler)):
        return BatchResponse(batch=sched.pause(batch_id))

    @app.post("/batches/{batch_id}/resume", response_model=BatchResponse)
    def resume_batch(batch_id: str, sched: Scheduler = Depends(get_scheduler)):
        return BatchResponse(batch=sched.resume(batch_id))

    @app.post("/batches/{batch_id}/stop", response_model=BatchResponse)
    def stop_batch(batch_id: str, sched: Scheduler = Depends(get_scheduler)):
        return BatchResponse(batch=sched.stop(batch_id))

    @app.delete("/batches/{batch_id}", response_model=BatchResponse)
    def delete_batch(batch_id: str, sched: Scheduler = Depends(get_scheduler)):
        """Delete a queued or finished batch and its tasks."""
        return BatchResponse(batch=sched.delete(batch_id))

    @app.get("/batches/{batch_id}/tasks", response_model=TaskListResponse)
    def get_tasks(
        batch_id: str,
        status: Optional[TaskStatus] = Query(None, description="Filter by task status"),
        sched: Scheduler = Depends(get_scheduler),
    ):
        """Tasks of a batch in grid order."""
        tasks = sched.get_tasks(batch_id, status=status)
        return TaskListResponse(batch_id=batch_id, tasks=tasks, count=len(tasks))

    @app.get("/batches/{batch_id}/summary", response_model=BatchSummary)
    def get_summary(batch_id: str, sched: Scheduler = Depends(get_scheduler)):
        """Best result, correlations and per-combination means so far."""
        return sched.get_summary(batch_id)

    @app.get("/batches/{batch_id}/export")
    def export_batch(
        batch_id: str,
        format: Literal["csv", "json"] = Query("json", description="Export format"),  # noqa: A002
        status: Optional[TaskStatus] = Query(None, description="Filter by task status"),
        sched: Scheduler = Depends(get_scheduler),
    ):
        """Download a batch's tasks as CSV, or batch, summary and tasks as JSON."""
        batch = sched.get_progress(batch_id)
        tasks = sched.get_tasks(batch_id, status=status)
        filename = f"sweep-{batch_id}.{format}"
        headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
        if format == "csv":
            buffer = io.StringIO()
            _ = write_csv_rows(buffer, tasks)
            return Response(buffer.getvalue(), media_type="text/csv", headers=headers)
        payload = export_payload(batch, tasks, sched.get_summary(batch_id))
        return JSONResponse(payload, headers=headers)

    # --- Health Check ---

    @app.get("/health", response_model=HealthResponse)
    def health_check(sched: Scheduler = Depends(get_scheduler)):
        """Health check endpoint."""
        return HealthResponse(provider=sched.provider.name, batches=len(sched.list_batches()))

    return app
