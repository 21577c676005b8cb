# Copyright (c) Syntropy Systems
"""FastAPI application for the expwatch server."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, closing
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from expwatch.config import ExpwatchConfig
from expwatch.db import (
    cleanup_old_versions,
    create_dataset,
    get_connection,
    get_dataset,
    get_datasets,
    get_version_history,
    init_db,
    require_dataset,
    search_experiments,
)
from expwatch.errors import (
    DatasetNotFoundError,
    DetectionAlreadyRunningError,
    VersionConflictError,
    VersionNotFoundError,
)
from expwatch.jobs import JobQueue, WorkerPool
from expwatch.models.api import (
    DatasetCreate,
    DatasetListResponse,
    DetectRequest,
    DetectResponse,
    MessageResponse,
    ScheduledTaskResponse,
    SchedulerStatusResponse,
    SchedulerTriggerRequest,
)
from expwatch.models.db import DatasetRecord, ExperimentSearchHit, JobRecord, QueueStats, VersionPage
from expwatch.models.reports import (
    BatchResult,
    DatasetStatistics,
    DetectionStatus,
    LatestSummary,
    RecoveryResult,
    TrendReport,
    VersionComparison,
    VersionDetails,
)
from expwatch.orchestrator import DetectionOrchestrator, get_detection_status
from expwatch.scheduler import Scheduler
from expwatch.scraper import ScraperClient
from expwatch.trends import (
    TIME_RANGES,
    compare_versions,
    get_dataset_statistics,
    get_latest_summary,
    get_trends,
    get_version_details,
)

logger = logging.getLogger(__name__)


def _connect(request: Request) -> closing[sqlite3.Connection]:
    return closing(get_connection(request.app.state.db_path))


def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def _conflict(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the worker pool and scheduler for the lifetime of the app."""
    if app.state.start_background:
        app.state.pool.start()
        app.state.scheduler.start()
    yield
    app.state.scheduler.stop(timeout=5)
    app.state.pool.stop(timeout=5)


def create_app(
    db_path: Path,
    scraper: Optional[ScraperClient] = None,
    config: Optional[ExpwatchConfig] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        db_path: SQLite database path
        scraper: Scraping collaborator used by queued detection jobs
        config: Settings; defaults apply when omitted
        start_background: Run the worker pool and scheduler with the app

    Returns:
        Configured FastAPI application
    """
    config = config or ExpwatchConfig()
    init_db(db_path)

    queue = JobQueue(db_path)
    orchestrator = DetectionOrchestrator(db_path, scraper, config, queue=queue)

    app = FastAPI(
        title="expwatch server",
        description="Change detection and versioning for Optimizely experiment scans",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.db_path = db_path
    app.state.config = config
    app.state.queue = queue
    app.state.orchestrator = orchestrator
    app.state.pool = WorkerPool(queue, workers=config.max_concurrent_jobs, poll_interval=config.poll_interval)
    app.state.scheduler = Scheduler.for_orchestrator(orchestrator, config)
    app.state.start_background = start_background

    app.add_exception_handler(DatasetNotFoundError, _not_found)
    app.add_exception_handler(VersionNotFoundError, _not_found)
    app.add_exception_handler(DetectionAlreadyRunningError, _conflict)
    app.add_exception_handler(VersionConflictError, _conflict)
    app.add_exception_handler(ValueError, _bad_request)

    # --- Datasets ---

    @app.get("/api/v1/datasets", response_model=DatasetListResponse)
    def list_datasets(request: Request):
        """List all datasets."""
        with _connect(request) as conn:
            return DatasetListResponse(datasets=get_datasets(conn))

    @app.post("/api/v1/datasets", response_model=DatasetRecord, status_code=201)
    def add_dataset(body: DatasetCreate, request: Request):
        """Create a dataset."""
        with _connect(request) as conn:
            if body.id is not None and get_dataset(conn, body.id) is not None:
                raise HTTPException(status_code=409, detail=f"Dataset {body.id} already exists")
            dataset_id = create_dataset(conn, body.name, body.urls, body.id)
            return require_dataset(conn, dataset_id)

    @app.get("/api/v1/datasets/{dataset_id}", response_model=DatasetRecord)
    def get_one_dataset(dataset_id: str, request: Request):
        with _connect(request) as conn:
            return require_dataset(conn, dataset_id)

    @app.get("/api/v1/datasets/{dataset_id}/status", response_model=DetectionStatus)
    def dataset_status(dataset_id: str, request: Request):
        """Detection status of a dataset."""
        with _connect(request) as conn:
            return get_detection_status(conn, dataset_id)

    # --- Detection ---

    @app.post("/api/v1/datasets/{dataset_id}/detect", response_model=DetectResponse, status_code=202)
    def start_detection(dataset_id: str, request: Request, body: Optional[DetectRequest] = None):
        """Queue change detection for one dataset."""
        body = body or DetectRequest()
        job_id = request.app.state.orchestrator.start_for_dataset(
            dataset_id, body.trigger_type, body.triggered_by
        )
        if job_id is None:
            raise HTTPException(
                status_code=409,
                detail=f"Change detection already running for dataset {dataset_id}",
            )
        return DetectResponse(dataset_id=dataset_id, job_id=job_id, message="Change detection started")

    @app.post("/api/v1/detect/all", response_model=BatchResult, status_code=202)
    def start_detection_all(request: Request, body: Optional[DetectRequest] = None):
        """Queue change detection for every dataset with URLs."""
        body = body or DetectRequest()
        return request.app.state.orchestrator.run_for_all_datasets(body.trigger_type, body.triggered_by)

    @app.get("/api/v1/jobs", response_model=QueueStats)
    def queue_stats(request: Request):
        """Job counts per status and the current scrape batching."""
        config = request.app.state.config
        return request.app.state.queue.stats(
            config.max_concurrent_jobs, config.scrape_concurrent, config.scrape_delay_ms
        )

    @app.get("/api/v1/jobs/{job_id}", response_model=JobRecord)
    def get_job(job_id: int, request: Request):
        """Get job status, progress and result."""
        job = request.app.state.queue.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job

    @app.post("/api/v1/recovery/sweep", response_model=RecoveryResult)
    def recovery_sweep(request: Request):
        """Fail timed out versions and restart stuck datasets."""
        return request.app.state.orchestrator.recover()

    # --- Versions ---

    @app.get("/api/v1/datasets/{dataset_id}/versions", response_model=VersionPage)
    def version_history(
        dataset_id: str,
        request: Request,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        trigger_type: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        from_date: Optional[str] = Query(None),
        to_date: Optional[str] = Query(None),
    ):
        """Paginated version history, newest first."""
        with _connect(request) as conn:
            _ = require_dataset(conn, dataset_id)
            return get_version_history(
                conn,
                dataset_id,
                page=page,
                limit=limit,
                trigger_type=trigger_type,
                status=status,
                from_date=from_date,
                to_date=to_date,
            )

    @app.delete("/api/v1/datasets/{dataset_id}/versions", response_model=MessageResponse)
    def cleanup_versions(dataset_id: str, request: Request, keep: Optional[int] = Query(None, ge=1)):
        """Delete old versions beyond the keep count."""
        keep_versions = keep or request.app.state.config.keep_versions
        with _connect(request) as conn:
            _ = require_dataset(conn, dataset_id)
            deleted = cleanup_old_versions(conn, dataset_id, keep_versions)
        return MessageResponse(message=f"Deleted {deleted} old version(s)")

    @app.get("/api/v1/datasets/{dataset_id}/versions/latest", response_model=LatestSummary)
    def latest_version(dataset_id: str, request: Request):
        """Summary of the newest completed version."""
        with _connect(request) as conn:
            _ = require_dataset(conn, dataset_id)
            summary = get_latest_summary(conn, dataset_id)
        if summary is None:
            raise HTTPException(status_code=404, detail=f"No completed versions for dataset {dataset_id}")
        return summary

    @app.get("/api/v1/datasets/{dataset_id}/versions/{version_number}", response_model=VersionDetails)
    def version_details(dataset_id: str, version_number: int, request: Request):
        with _connect(request) as conn:
            return get_version_details(conn, dataset_id, version_number)

    @app.get("/api/v1/datasets/{dataset_id}/compare", response_model=VersionComparison)
    def compare(dataset_id: str, request: Request, v1: int = Query(..., ge=1), v2: int = Query(..., ge=1)):
        """Diff two completed versions."""
        orchestrator: DetectionOrchestrator = request.app.state.orchestrator
        with _connect(request) as conn:
            return compare_versions(conn, dataset_id, v1, v2, orchestrator.thresholds)

    @app.get("/api/v1/datasets/{dataset_id}/trends", response_model=TrendReport)
    def trends(dataset_id: str, request: Request, time_range: str = Query("6months")):
        if time_range not in TIME_RANGES:
            raise HTTPException(
                status_code=400,
                detail=f"time_range must be one of: {', '.join(TIME_RANGES)}",
            )
        with _connect(request) as conn:
            _ = require_dataset(conn, dataset_id)
            return get_trends(conn, dataset_id, time_range)

    @app.get("/api/v1/datasets/{dataset_id}/statistics", response_model=DatasetStatistics)
    def statistics(dataset_id: str, request: Request):
        with _connect(request) as conn:
            return get_dataset_statistics(conn, dataset_id)

    @app.get("/api/v1/datasets/{dataset_id}/search", response_model=list[ExperimentSearchHit])
    def search(
        dataset_id: str,
        request: Request,
        q: str = Query(..., min_length=1),
        domain: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        version: Optional[int] = Query(None, ge=1),
        limit: int = Query(100, ge=1, le=1000),
    ):
        """Find experiments by name or ID."""
        with _connect(request) as conn:
            _ = require_dataset(conn, dataset_id)
            return search_experiments(
                conn, dataset_id, q, version_number=version, domain=domain, status=status, limit=limit
            )

    # --- Scheduler ---

    def _scheduler_status(scheduler: Scheduler) -> SchedulerStatusResponse:
        tasks = []
        for task in scheduler.tasks():
            next_run = scheduler.next_run(task.name)
            tasks.append(
                ScheduledTaskResponse(
                    name=task.name,
                    expression=task.schedule.expression,
                    runs=task.runs,
                    last_run=task.last_run.isoformat() if task.last_run else None,
                    next_run=next_run.isoformat() if next_run else None,
                    last_error=task.last_error,
                )
            )
        return SchedulerStatusResponse(running=scheduler.is_running, timezone=str(scheduler.tz), tasks=tasks)

    @app.get("/api/v1/scheduler", response_model=SchedulerStatusResponse)
    def scheduler_status(request: Request):
        return _scheduler_status(request.app.state.scheduler)

    @app.post("/api/v1/scheduler/start", response_model=SchedulerStatusResponse)
    def scheduler_start(request: Request):
        scheduler: Scheduler = request.app.state.scheduler
        scheduler.start()
        return _scheduler_status(scheduler)

    @app.post("/api/v1/scheduler/stop", response_model=SchedulerStatusResponse)
    def scheduler_stop(request: Request):
        scheduler: Scheduler = request.app.state.scheduler
        scheduler.stop(timeout=5)
        return _scheduler_status(scheduler)

    @app.post("/api/v1/scheduler/trigger", response_model=MessageResponse)
    def scheduler_trigger(request: Request, body: Optional[SchedulerTriggerRequest] = None):
        """Run a scheduled task now."""
        task = (body or SchedulerTriggerRequest()).task
        scheduler: Scheduler = request.app.state.scheduler
        try:
            _ = scheduler.trigger_now(task)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=f"Unknown scheduled task: {task}") from e
        return MessageResponse(message=f"Triggered {task}")

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
