# Copyright (c) Syntropy Systems
"""Drive one detection run per dataset: scrape, snapshot, diff, version."""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Optional

from expwatch.config import ExpwatchConfig
from expwatch.db import (
    complete_dataset_detection,
    complete_version,
    create_running_version,
    fail_dataset_detection,
    fail_stale_jobs,
    fail_stale_versions,
    fail_version,
    get_connection,
    get_datasets,
    get_latest_completed,
    get_running_versions,
    get_stale_pending_datasets,
    has_active_job,
    purge_finished_jobs,
    require_dataset,
    set_dataset_pending,
    start_dataset_detection,
)
from expwatch.detection.differ import SignificanceThresholds, diff
from expwatch.errors import (
    AllScrapesFailedError,
    DetectionAlreadyRunningError,
    ExpwatchError,
    NoUrlsError,
    ScrapeError,
)
from expwatch.jobs import JobProgress, JobQueue
from expwatch.models.base import JSONValue
from expwatch.models.db import ScrapeOptions, VersionRecord, normalize_trigger_type
from expwatch.models.reports import (
    BatchItem,
    BatchResult,
    DetectionResult,
    DetectionStatus,
    RecoveryResult,
    TimedOutVersion,
)
from expwatch.models.scrape import ScrapeFailure, ScrapeSuccess
from expwatch.scraper import ScraperClient
from expwatch.snapshot import build_snapshot
from expwatch.trends import format_duration

logger = logging.getLogger(__name__)

DETECTION_JOB = "change-detection"
INTERRUPTED_ERROR = "Interrupted by new change detection run"
TIMEOUT_ERROR = "Timeout - job took longer than expected"

# progress(percent, message)
DetectionProgress = Callable[[float, str], None]

# Share of the progress bar spent scraping.
_SCRAPE_START = 10.0
_SCRAPE_END = 80.0

# Jobs without a heartbeat for this long are failed by the sweep.
_JOB_TIMEOUT_SECONDS = 2 * 60 * 60


class DetectionOrchestrator:
    """Runs change detection for datasets against a scraper."""

    def __init__(
        self,
        db_path: Path,
        scraper: Optional[ScraperClient],
        config: Optional[ExpwatchConfig] = None,
        queue: Optional[JobQueue] = None,
    ) -> None:
        self.db_path = db_path
        self.scraper = scraper
        self.config = config or ExpwatchConfig()
        self.queue = queue
        if queue is not None:
            queue.register_handler(DETECTION_JOB, self._handle_job)

    @property
    def thresholds(self) -> SignificanceThresholds:
        return SignificanceThresholds(
            total_changes=self.config.significant_total_threshold,
            affected_domains=self.config.significant_domain_threshold,
        )

    # --- Synchronous runs ---

    def run_for_dataset(
        self,
        dataset_id: str,
        trigger_type: str = "manual",
        triggered_by: str = "system",
        progress: Optional[DetectionProgress] = None,
        interrupt_stale: bool = False,
    ) -> DetectionResult:
        """
        Run one detection for a dataset and persist it as a new version.

        Scrape and URL problems leave a failed version and a failed result.
        Any other error fails the version and dataset, then propagates.
        Raises DetectionAlreadyRunningError when a version is already running;
        with interrupt_stale, a running version older than running_timeout
        is failed first instead.
        """
        if self.scraper is None:
            msg = "A scraper is required to run detection"
            raise RuntimeError(msg)
        trigger = normalize_trigger_type(trigger_type)

        def report(percent: float, message: str) -> None:
            if progress is not None:
                progress(percent, message)

        with closing(get_connection(self.db_path)) as conn:
            dataset = require_dataset(conn, dataset_id)
            if interrupt_stale:
                for version in fail_stale_versions(
                    conn, self.config.running_timeout, INTERRUPTED_ERROR, dataset_id=dataset_id
                ):
                    logger.warning(
                        "Interrupted stale version %d of dataset %s", version.version_number, dataset_id
                    )
            version = create_running_version(conn, dataset.id, dataset.name, trigger, triggered_by)
            try:
                start_dataset_detection(conn, dataset.id, trigger)
            except Exception as e:
                self._record_failure(version, str(e))
                raise

        logger.info(
            "Started detection for dataset %s (version %d, %s)", dataset_id, version.version_number, trigger
        )
        started = time.monotonic()
        report(5, f"Version {version.version_number} started")

        try:
            result = self._execute(version, dataset.urls, started, report)
        except ScrapeError as e:
            logger.warning("Detection for dataset %s failed: %s", dataset_id, e)
            self._record_failure(version, str(e))
            return DetectionResult(
                dataset_id=dataset_id,
                version_number=version.version_number,
                status="failed",
                urls_scanned=len(dataset.urls),
                failed_scans=getattr(e, "total", 0),
                duration_ms=int((time.monotonic() - started) * 1000),
                error=str(e),
            )
        except Exception as e:
            logger.exception("Detection for dataset %s crashed", dataset_id)
            self._record_failure(version, str(e) or type(e).__name__)
            raise

        report(100, "Change detection completed")
        return result

    def _execute(
        self,
        version: VersionRecord,
        urls: list[str],
        started: float,
        report: DetectionProgress,
    ) -> DetectionResult:
        if not urls:
            raise NoUrlsError

        def scrape_progress(done: int, total: int) -> None:
            span = _SCRAPE_END - _SCRAPE_START
            report(_SCRAPE_START + span * done / max(total, 1), f"Scanned {done}/{total} URLs")

        assert self.scraper is not None
        options = self._scrape_options()
        report(_SCRAPE_START, f"Scanning {len(urls)} URLs")
        results = self.scraper.batch_scrape(
            urls,
            concurrent=options.concurrent,
            delay_ms=options.delay_ms,
            progress=scrape_progress,
        )
        if not any(isinstance(r, ScrapeSuccess) for r in results):
            first_error = next((r.error for r in results if isinstance(r, ScrapeFailure)), None)
            raise AllScrapesFailedError(len(urls), first_error)

        report(_SCRAPE_END, "Building snapshot")
        snapshot, stats = build_snapshot(results)

        with closing(get_connection(self.db_path)) as conn:
            previous = get_latest_completed(conn, version.dataset_id, before_version=version.version_number)
            report(85, "Comparing with previous version")
            changeset = diff(
                previous.experiments_snapshot.all_experiments
                if previous is not None and previous.experiments_snapshot is not None
                else None,
                snapshot.all_experiments,
                first_version=previous is None,
                thresholds=self.thresholds,
                previous_version_number=previous.version_number if previous else None,
                previous_run_timestamp=previous.run_timestamp if previous else None,
            )
            duration_ms = int((time.monotonic() - started) * 1000)
            report(95, "Saving version")
            complete_version(conn, version.id, snapshot, changeset, stats, duration_ms)
            complete_dataset_detection(
                conn,
                version.dataset_id,
                version.version_number,
                changeset.summary.total_changes,
                format_duration(duration_ms),
            )

        logger.info(
            "Dataset %s version %d completed: %d change(s)",
            version.dataset_id,
            version.version_number,
            changeset.summary.total_changes,
        )
        return DetectionResult(
            dataset_id=version.dataset_id,
            version_number=version.version_number,
            status="completed",
            has_changes=changeset.has_changes,
            total_changes=changeset.summary.total_changes,
            changes_by_type=changeset.summary.changes_by_type,
            significant_changes=changeset.summary.significant_changes,
            urls_scanned=stats.total_urls_processed,
            successful_scans=stats.successful_scans,
            failed_scans=stats.failed_scans,
            duration_ms=duration_ms,
        )

    def _scrape_options(self) -> ScrapeOptions:
        concurrent, delay_ms = self.config.scrape_concurrent, self.config.scrape_delay_ms
        if self.queue is not None and self.config.adaptive_scraping:
            options = self.queue.scrape_options(concurrent, delay_ms)
            if options.load_level != "single":
                logger.info(
                    "Queue load %s: scraping %d at a time, %dms apart",
                    options.load_level,
                    options.concurrent,
                    options.delay_ms,
                )
            return options
        return ScrapeOptions(concurrent=concurrent, delay_ms=delay_ms)

    def _record_failure(self, version: VersionRecord, error: str) -> None:
        """Fail the version and its dataset without masking the original error."""
        try:
            with closing(get_connection(self.db_path)) as conn:
                fail_version(conn, version.id, error)
        except Exception:
            logger.exception("Could not mark version %d as failed", version.version_number)
        try:
            with closing(get_connection(self.db_path)) as conn:
                fail_dataset_detection(conn, version.dataset_id, error)
        except Exception:
            logger.exception("Could not mark dataset %s as failed", version.dataset_id)

    # --- Queued runs ---

    def start_for_dataset(
        self,
        dataset_id: str,
        trigger_type: str = "manual",
        triggered_by: str = "system",
    ) -> Optional[int]:
        """Queue a detection job. Returns None if the dataset is already busy."""
        if self.queue is None:
            msg = "A job queue is required to start detection in the background"
            raise RuntimeError(msg)
        trigger = normalize_trigger_type(trigger_type)

        with closing(get_connection(self.db_path)) as conn:
            dataset = require_dataset(conn, dataset_id)
            if get_running_versions(conn, dataset_id) or dataset.change_detection_status == "pending":
                logger.info("Detection already running or pending for dataset %s", dataset_id)
                return None
            set_dataset_pending(conn, dataset_id)

        return self._enqueue(dataset_id, trigger, triggered_by)

    def _enqueue(self, dataset_id: str, trigger_type: str, triggered_by: str) -> int:
        assert self.queue is not None
        return self.queue.submit(
            DETECTION_JOB,
            {"dataset_id": dataset_id, "trigger_type": trigger_type, "triggered_by": triggered_by},
        )

    def _handle_job(self, payload: dict[str, JSONValue], progress: JobProgress) -> DetectionResult:
        dataset_id = str(payload["dataset_id"])

        def report(percent: float, message: str) -> None:
            progress(percent, {"message": message})

        result = self.run_for_dataset(
            dataset_id,
            trigger_type=str(payload.get("trigger_type") or "manual"),
            triggered_by=str(payload.get("triggered_by") or "system"),
            progress=report,
            interrupt_stale=bool(payload.get("interrupt_stale", False)),
        )
        if result.status == "failed":
            raise ScrapeError(result.error or "Change detection failed")
        return result

    def run_for_all_datasets(
        self,
        trigger_type: str = "cron",
        triggered_by: str = "monthly_scheduler",
    ) -> BatchResult:
        """Start detection for every dataset that has URLs.

        With a job queue the runs are queued; otherwise they run one after
        another in this thread. One dataset failing never stops the batch.
        """
        with closing(get_connection(self.db_path)) as conn:
            datasets = [d for d in get_datasets(conn) if d.urls]

        batch = BatchResult(total_datasets=len(datasets))
        for dataset in datasets:
            item = self._run_one_of_batch(dataset.id, dataset.name, trigger_type, triggered_by)
            batch.items.append(item)
            if item.outcome in ("started", "completed"):
                batch.started += 1
            elif item.outcome == "skipped":
                batch.skipped += 1
            else:
                batch.failed += 1

        logger.info(
            "Batch detection: %d started, %d skipped, %d failed",
            batch.started,
            batch.skipped,
            batch.failed,
        )
        return batch

    def _run_one_of_batch(
        self, dataset_id: str, dataset_name: str, trigger_type: str, triggered_by: str
    ) -> BatchItem:
        try:
            if self.queue is not None:
                job_id = self.start_for_dataset(dataset_id, trigger_type, triggered_by)
                if job_id is None:
                    return BatchItem(dataset_id=dataset_id, dataset_name=dataset_name, outcome="skipped")
                return BatchItem(
                    dataset_id=dataset_id, dataset_name=dataset_name, outcome="started", job_id=job_id
                )

            result = self.run_for_dataset(dataset_id, trigger_type, triggered_by)
        except DetectionAlreadyRunningError:
            return BatchItem(dataset_id=dataset_id, dataset_name=dataset_name, outcome="skipped")
        except Exception as e:
            logger.exception("Detection for dataset %s failed in batch", dataset_id)
            return BatchItem(dataset_id=dataset_id, dataset_name=dataset_name, outcome="failed", error=str(e))

        if result.status == "failed":
            return BatchItem(
                dataset_id=dataset_id,
                dataset_name=dataset_name,
                outcome="failed",
                version_number=result.version_number,
                error=result.error,
            )
        return BatchItem(
            dataset_id=dataset_id,
            dataset_name=dataset_name,
            outcome="completed",
            version_number=result.version_number,
        )

    # --- Recovery ---

    def recover(self, now: Optional[datetime] = None) -> RecoveryResult:
        """
        Periodic sweep for work that never finished.

        - Versions running longer than running_timeout are failed.
        - Datasets pending longer than pending_timeout are restarted.
        - Datasets that still have a queued or running job are left alone.
        - Jobs without a heartbeat for two hours are failed.
        - Finished jobs older than job_retention are deleted.
        """
        recovery = RecoveryResult()

        with closing(get_connection(self.db_path)) as conn:
            for version in fail_stale_versions(conn, self.config.running_timeout, TIMEOUT_ERROR, now):
                fail_dataset_detection(conn, version.dataset_id, TIMEOUT_ERROR)
                recovery.timed_out_versions.append(
                    TimedOutVersion(
                        dataset_id=version.dataset_id,
                        version_number=version.version_number,
                        start_time=version.start_time,
                    )
                )
                logger.warning(
                    "Timed out version %d of dataset %s", version.version_number, version.dataset_id
                )
            recovery.failed_jobs = [job.id for job in fail_stale_jobs(conn, _JOB_TIMEOUT_SECONDS, now)]
            recovery.purged_jobs = purge_finished_jobs(conn, self.config.job_retention, now)
            stale_pending = [
                dataset
                for dataset in get_stale_pending_datasets(conn, self.config.pending_timeout, now)
                if not has_active_job(conn, DETECTION_JOB, dataset.id)
            ]

        for dataset in stale_pending:
            logger.warning("Restarting stuck detection for dataset %s", dataset.id)
            try:
                if self.queue is not None:
                    with closing(get_connection(self.db_path)) as conn:
                        set_dataset_pending(conn, dataset.id)
                    _ = self.queue.submit(
                        DETECTION_JOB,
                        {
                            "dataset_id": dataset.id,
                            "trigger_type": "cron",
                            "triggered_by": "recovery",
                            "interrupt_stale": True,
                        },
                    )
                else:
                    _ = self.run_for_dataset(dataset.id, "cron", "recovery", interrupt_stale=True)
            except ExpwatchError as e:
                logger.warning("Could not restart dataset %s: %s", dataset.id, e)
                continue
            recovery.restarted_datasets.append(dataset.id)

        return recovery

    def get_status(self, dataset_id: str) -> DetectionStatus:
        with closing(get_connection(self.db_path)) as conn:
            return get_detection_status(conn, dataset_id)


def get_detection_status(conn: sqlite3.Connection, dataset_id: str) -> DetectionStatus:
    """Dataset status fields plus its running and latest completed versions."""
    dataset = require_dataset(conn, dataset_id)
    running = get_running_versions(conn, dataset_id)
    latest = get_latest_completed(conn, dataset_id)
    return DetectionStatus(
        dataset_id=dataset.id,
        dataset_name=dataset.name,
        change_detection_status=dataset.change_detection_status,
        change_detection_started_at=dataset.change_detection_started_at,
        change_detection_completed_at=dataset.change_detection_completed_at,
        change_detection_error=dataset.change_detection_error,
        last_change_detection_run=dataset.last_change_detection_run,
        stats=dataset.change_detection_stats,
        running_version=running[0].version_number if running else None,
        latest_version=latest.version_number if latest else None,
        latest_version_timestamp=latest.run_timestamp if latest else None,
    )
