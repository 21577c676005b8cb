# Copyright (c) Syntropy Systems
"""SQLite-backed job queue and the worker pool that drains it."""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable
from contextlib import closing
from pathlib import Path
from threading import Event, Lock, Thread
from typing import Optional

from pydantic import BaseModel
from typing_extensions import Self

from expwatch.db import (
    claim_job,
    complete_job,
    create_job,
    fail_job,
    get_connection,
    get_job,
    get_job_counts,
    update_job_progress,
)
from expwatch.models.base import JSONValue
from expwatch.models.db import JobRecord, QueueStats, ScrapeOptions

logger = logging.getLogger(__name__)

# progress(percent, partial_result)
JobProgress = Callable[[float, Optional[JSONValue]], None]
JobHandler = Callable[[dict[str, JSONValue], JobProgress], object]


def _jsonable(value: object) -> JSONValue:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value  # type: ignore[return-value]


def scrape_options_for_load(running_jobs: int, concurrent: int, delay_ms: int) -> ScrapeOptions:
    """Scale scrape batching down as more jobs share the scraper.

    One running job gets the configured values, two get half the
    concurrency at twice the delay, more get one URL at a time at three
    times the delay.
    """
    if running_jobs <= 1:
        return ScrapeOptions(concurrent=max(1, concurrent), delay_ms=delay_ms, load_level="single")
    if running_jobs == 2:
        return ScrapeOptions(concurrent=max(1, concurrent // 2), delay_ms=delay_ms * 2, load_level="multi")
    return ScrapeOptions(concurrent=1, delay_ms=delay_ms * 3, load_level="heavy")


class JobQueue:
    """Typed jobs persisted in the jobs table, run by registered handlers."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._handlers: dict[str, JobHandler] = {}
        self._lock = Lock()

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        with self._lock:
            self._handlers[job_type] = handler

    @property
    def job_types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def submit(self, job_type: str, payload: Optional[dict[str, JSONValue]] = None) -> int:
        """Queue a job and return its ID."""
        with closing(get_connection(self.db_path)) as conn:
            job_id = create_job(conn, job_type, payload)
        logger.info("Queued %s job #%d", job_type, job_id)
        return job_id

    def get_job(self, job_id: int) -> Optional[JobRecord]:
        with closing(get_connection(self.db_path)) as conn:
            return get_job(conn, job_id)

    def counts(self) -> dict[str, int]:
        with closing(get_connection(self.db_path)) as conn:
            return get_job_counts(conn)

    def scrape_options(self, concurrent: int, delay_ms: int) -> ScrapeOptions:
        return scrape_options_for_load(self.counts().get("running", 0), concurrent, delay_ms)

    def stats(self, max_concurrent_jobs: int, concurrent: int = 2, delay_ms: int = 1000) -> QueueStats:
        """Job counts per status and the scrape batching the current load gets."""
        counts = self.counts()
        return QueueStats(
            total=sum(counts.values()),
            queued=counts.get("queued", 0),
            running=counts.get("running", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
            max_concurrent_jobs=max_concurrent_jobs,
            scrape_options=scrape_options_for_load(counts.get("running", 0), concurrent, delay_ms),
        )

    def claim(self, worker_id: str) -> Optional[JobRecord]:
        with closing(get_connection(self.db_path)) as conn:
            return claim_job(conn, worker_id, self.job_types)

    def execute(self, job: JobRecord) -> None:
        """Run a claimed job to completion, recording its result or error."""
        with self._lock:
            handler = self._handlers.get(job.job_type)

        def progress(percent: float, partial_result: Optional[JSONValue] = None) -> None:
            with closing(get_connection(self.db_path)) as conn:
                update_job_progress(conn, job.id, percent, _jsonable(partial_result))

        if handler is None:
            error = f"No worker available for job type: {job.job_type}"
        else:
            try:
                result = handler(job.payload, progress)
            except Exception as e:
                logger.exception("Job #%d (%s) failed", job.id, job.job_type)
                error = str(e) or type(e).__name__
            else:
                with closing(get_connection(self.db_path)) as conn:
                    complete_job(conn, job.id, _jsonable(result))
                return

        with closing(get_connection(self.db_path)) as conn:
            fail_job(conn, job.id, error)

    def run_pending(self, worker_id: str = "inline") -> int:
        """Run queued jobs in the calling thread until none are left.

        Returns the number of jobs run.
        """
        count = 0
        while True:
            job = self.claim(worker_id)
            if job is None:
                return count
            self.execute(job)
            count += 1


class WorkerPool:
    """Fixed number of threads claiming jobs from a JobQueue.

    Each thread runs one job at a time, so at most `workers` jobs run at once.
    """

    def __init__(self, queue: JobQueue, workers: int = 2, poll_interval: float = 2.0) -> None:
        self.queue = queue
        self.workers = max(1, workers)
        self.poll_interval = poll_interval
        self._shutdown = Event()
        self._threads: list[Thread] = []
        self._prefix = f"{socket.gethostname()}:pool"

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.is_running:
            return
        self._shutdown.clear()
        self._threads = [
            Thread(
                target=self._worker_loop,
                args=(f"{self._prefix}{index}",),
                name=f"expwatch-worker-{index}",
                daemon=True,
            )
            for index in range(self.workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d worker thread(s)", self.workers)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop claiming new jobs and wait for running ones to finish."""
        self._shutdown.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def wait(self) -> None:
        """Block until stop() is called from another thread or a signal handler."""
        while not self._shutdown.wait(timeout=1.0):
            pass

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _worker_loop(self, worker_id: str) -> None:
        while not self._shutdown.is_set():
            try:
                job = self.queue.claim(worker_id)
            except Exception:
                logger.exception("Worker %s could not claim a job", worker_id)
                job = None

            if job is None:
                # No jobs available, wait and retry
                _ = self._shutdown.wait(timeout=self.poll_interval)
                continue

            logger.info("Worker %s running job #%d (%s)", worker_id, job.id, job.job_type)
            try:
                self.queue.execute(job)
            except Exception:
                logger.exception("Worker %s lost job #%d", worker_id, job.id)
