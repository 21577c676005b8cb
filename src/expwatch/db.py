# Copyright (c) Syntropy Systems
"""SQLite storage for datasets, versions and detection jobs.

WAL mode lets readers run next to the single writer; every multi-step write
runs inside BEGIN IMMEDIATE so version numbers and job claims are atomic.
"""

from __future__ import annotations

import json
import math
import re
import sqlite3
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from expwatch.errors import (
    DatasetNotFoundError,
    DetectionAlreadyRunningError,
    VersionConflictError,
    VersionStateError,
)
from expwatch.models.base import JSONValue
from expwatch.models.changes import Changeset
from expwatch.models.db import (
    DatasetRecord,
    DetectionStats,
    ExperimentSearchHit,
    JobRecord,
    Pagination,
    VersionPage,
    VersionRecord,
    VersionStatistics,
    normalize_trigger_type,
)
from expwatch.models.experiment import ProcessingStats, Snapshot

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

SCHEMA = """
-- Datasets: the URL lists that get scanned, plus detection status fields
CREATE TABLE IF NOT EXISTS datasets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    urls TEXT NOT NULL DEFAULT '[]',  -- JSON array
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),

    change_detection_status TEXT DEFAULT 'not_started',
    change_detection_started_at TEXT,
    change_detection_completed_at TEXT,
    change_detection_error TEXT,
    last_change_detection_run TEXT,
    change_detection_stats TEXT  -- JSON
);

-- Versions: one row per detection run, immutable once terminal
CREATE TABLE IF NOT EXISTS versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    dataset_id TEXT NOT NULL REFERENCES datasets(id),
    dataset_name TEXT,
    version_number INTEGER NOT NULL CHECK (version_number >= 1),
    trigger_type TEXT NOT NULL,  -- manual, cron
    triggered_by TEXT,
    run_timestamp TEXT NOT NULL,

    status TEXT NOT NULL DEFAULT 'running',  -- running, completed, failed
    error TEXT,
    start_time TEXT,
    end_time TEXT,
    duration_ms INTEGER,
    total_changes INTEGER DEFAULT 0,

    experiments_snapshot TEXT,  -- JSON
    changes_since_last_version TEXT,  -- JSON
    processing_stats TEXT,  -- JSON

    UNIQUE (dataset_id, version_number)
);

-- Jobs: asynchronous detection requests
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',  -- JSON
    status TEXT DEFAULT 'queued',  -- queued, running, completed, failed
    progress REAL DEFAULT 0,
    partial_result TEXT,  -- JSON
    result TEXT,  -- JSON
    error_message TEXT,
    attempt INTEGER DEFAULT 1,

    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    started_at TEXT,
    finished_at TEXT,

    worker_id TEXT,
    heartbeat_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_versions_dataset ON versions(dataset_id, version_number);
CREATE INDEX IF NOT EXISTS idx_versions_status ON versions(status);
CREATE INDEX IF NOT EXISTS idx_versions_run_timestamp ON versions(dataset_id, run_timestamp);
CREATE INDEX IF NOT EXISTS idx_datasets_status ON datasets(change_detection_status);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return format_timestamp(datetime.now(timezone.utc))


def stale_cutoff(timeout_seconds: float, now: Optional[datetime] = None) -> str:
    """Timestamp before which a started record counts as stale."""
    if now is None:
        now = datetime.now(timezone.utc)
    return format_timestamp(now - timedelta(seconds=timeout_seconds))


def is_stale(started_at: Optional[str], timeout_seconds: float, now: Optional[datetime] = None) -> bool:
    """Whether something started at started_at has outlived timeout_seconds.

    The SQL sweeps compare against stale_cutoff, which uses the same rule.
    """
    if not started_at:
        return False
    return started_at < stale_cutoff(timeout_seconds, now)


def _dumps(value: object) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "model_dump_json"):
        return value.model_dump_json()  # type: ignore[union-attr]
    return json.dumps(value)


# --- Dataset Operations ---


def create_dataset(
    conn: sqlite3.Connection,
    name: str,
    urls: Sequence[str],
    dataset_id: Optional[str] = None,
) -> str:
    """Create a dataset and return its ID."""
    if dataset_id is None:
        dataset_id = uuid.uuid4().hex[:12]
    now = utcnow()
    conn.execute(
        """
        INSERT INTO datasets (id, name, urls, created_at, updated_at, change_detection_stats)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (dataset_id, name, json.dumps(list(urls)), now, now, DetectionStats().model_dump_json()),
    )
    return dataset_id


def get_dataset(conn: sqlite3.Connection, dataset_id: str) -> Optional[DatasetRecord]:
    """Get a dataset by ID."""
    row = conn.execute("SELECT * FROM datasets WHERE id = ?", (dataset_id,)).fetchone()
    if row is None:
        return None
    return DatasetRecord.model_validate(dict(row))


def require_dataset(conn: sqlite3.Connection, dataset_id: str) -> DatasetRecord:
    dataset = get_dataset(conn, dataset_id)
    if dataset is None:
        raise DatasetNotFoundError(dataset_id)
    return dataset


def get_datasets(conn: sqlite3.Connection) -> list[DatasetRecord]:
    """Get all datasets, oldest first."""
    rows = conn.execute("SELECT * FROM datasets ORDER BY created_at, id").fetchall()
    return [DatasetRecord.model_validate(dict(row)) for row in rows]


def update_dataset_urls(conn: sqlite3.Connection, dataset_id: str, urls: Sequence[str]) -> None:
    cursor = conn.execute(
        "UPDATE datasets SET urls = ?, updated_at = ? WHERE id = ?",
        (json.dumps(list(urls)), utcnow(), dataset_id),
    )
    if cursor.rowcount == 0:
        raise DatasetNotFoundError(dataset_id)


def set_dataset_pending(conn: sqlite3.Connection, dataset_id: str) -> None:
    """Mark a dataset as waiting for a queued detection run."""
    conn.execute(
        """
        UPDATE datasets
        SET change_detection_status = 'pending', change_detection_error = NULL, updated_at = ?
        WHERE id = ?
        """,
        (utcnow(), dataset_id),
    )


def start_dataset_detection(conn: sqlite3.Connection, dataset_id: str, trigger_type: str) -> None:
    """Mark a dataset in progress and count the run against its trigger."""
    trigger = normalize_trigger_type(trigger_type)
    dataset = require_dataset(conn, dataset_id)
    stats = dataset.change_detection_stats
    if trigger == "manual":
        stats.manual_runs += 1
    else:
        stats.cron_runs += 1
    now = utcnow()
    conn.execute(
        """
        UPDATE datasets
        SET change_detection_status = 'in_progress',
            change_detection_started_at = ?,
            change_detection_error = NULL,
            change_detection_stats = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (now, stats.model_dump_json(), now, dataset_id),
    )


def complete_dataset_detection(
    conn: sqlite3.Connection,
    dataset_id: str,
    version_number: int,
    total_changes: int,
    last_run_duration: Optional[str] = None,
) -> None:
    dataset = require_dataset(conn, dataset_id)
    stats = dataset.change_detection_stats
    stats.total_versions += 1
    stats.last_version_number = version_number
    stats.total_changes_detected += total_changes
    stats.last_run_duration = last_run_duration
    now = utcnow()
    conn.execute(
        """
        UPDATE datasets
        SET change_detection_status = 'completed',
            change_detection_completed_at = ?,
            last_change_detection_run = ?,
            change_detection_error = NULL,
            change_detection_stats = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (now, now, stats.model_dump_json(), now, dataset_id),
    )


def fail_dataset_detection(conn: sqlite3.Connection, dataset_id: str, error: str) -> None:
    now = utcnow()
    conn.execute(
        """
        UPDATE datasets
        SET change_detection_status = 'failed',
            change_detection_completed_at = ?,
            change_detection_error = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (now, error, now, dataset_id),
    )


def get_stale_pending_datasets(
    conn: sqlite3.Connection,
    timeout_seconds: float,
    now: Optional[datetime] = None,
) -> list[DatasetRecord]:
    """Datasets that were queued for detection but never started."""
    rows = conn.execute(
        """
        SELECT * FROM datasets
        WHERE change_detection_status = 'pending'
          AND updated_at < ?
        ORDER BY updated_at
        """,
        (stale_cutoff(timeout_seconds, now),),
    ).fetchall()
    return [DatasetRecord.model_validate(dict(row)) for row in rows]


# --- Version Operations ---

_VERSION_SUMMARY_COLUMNS = """
    id, dataset_id, dataset_name, version_number, trigger_type, triggered_by,
    run_timestamp, status, error, start_time, end_time, duration_ms, total_changes,
    NULL AS experiments_snapshot, changes_since_last_version, processing_stats
"""


def _version(row: Optional[sqlite3.Row]) -> Optional[VersionRecord]:
    if row is None:
        return None
    return VersionRecord.model_validate(dict(row))


def next_version_number(conn: sqlite3.Connection, dataset_id: str) -> int:
    """Highest version number for the dataset plus one, starting at 1."""
    row = conn.execute(
        "SELECT MAX(version_number) AS latest FROM versions WHERE dataset_id = ?",
        (dataset_id,),
    ).fetchone()
    latest = row["latest"] if row else None
    return 1 if latest is None else int(latest) + 1


def create_running_version(
    conn: sqlite3.Connection,
    dataset_id: str,
    dataset_name: Optional[str],
    trigger_type: str = "manual",
    triggered_by: str = "system",
    version_number: Optional[int] = None,
    now: Optional[datetime] = None,
) -> VersionRecord:
    """
    Allocate the next version number and insert a running version.

    The running-version check, number allocation and insert share one
    immediate transaction. Raises DetectionAlreadyRunningError when the
    dataset already has a running version and VersionConflictError when the
    number is already taken.
    """
    trigger = normalize_trigger_type(trigger_type)
    if version_number is not None and version_number < 1:
        msg = f"Version numbers start at 1, got {version_number}"
        raise ValueError(msg)
    timestamp = format_timestamp(now) if now is not None else utcnow()

    conn.execute("BEGIN IMMEDIATE")
    try:
        running = conn.execute(
            """
            SELECT version_number FROM versions
            WHERE dataset_id = ? AND status = 'running'
            LIMIT 1
            """,
            (dataset_id,),
        ).fetchone()
        if running is not None:
            raise DetectionAlreadyRunningError(dataset_id, running["version_number"])

        number = version_number if version_number is not None else next_version_number(conn, dataset_id)
        try:
            row = conn.execute(
                """
                INSERT INTO versions (
                    dataset_id, dataset_name, version_number, trigger_type, triggered_by,
                    run_timestamp, status, start_time
                )
                VALUES (?, ?, ?, ?, ?, ?, 'running', ?)
                RETURNING *
                """,
                (dataset_id, dataset_name, number, trigger, triggered_by, timestamp, timestamp),
            ).fetchone()
        except sqlite3.IntegrityError as e:
            raise VersionConflictError(dataset_id, number) from e
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    return VersionRecord.model_validate(dict(row))


def _terminal_error(conn: sqlite3.Connection, version_id: int, action: str) -> VersionStateError:
    row = conn.execute("SELECT status FROM versions WHERE id = ?", (version_id,)).fetchone()
    if row is None:
        return VersionStateError(f"Cannot {action} version {version_id}: not found")
    return VersionStateError(f"Cannot {action} version {version_id}: already {row['status']}")


def _finish_duration(conn: sqlite3.Connection, version_id: int, end_time: str) -> Optional[int]:
    row = conn.execute("SELECT start_time FROM versions WHERE id = ?", (version_id,)).fetchone()
    if row is None or not row["start_time"]:
        return None
    started = parse_timestamp(row["start_time"])
    finished = parse_timestamp(end_time)
    return max(0, int((finished - started).total_seconds() * 1000))


def complete_version(
    conn: sqlite3.Connection,
    version_id: int,
    snapshot: Snapshot,
    changeset: Changeset,
    processing_stats: ProcessingStats,
    duration_ms: Optional[int] = None,
) -> None:
    """Store the scan results and mark a running version completed."""
    now = utcnow()
    if duration_ms is None:
        duration_ms = _finish_duration(conn, version_id, now)
    cursor = conn.execute(
        """
        UPDATE versions
        SET status = 'completed',
            end_time = ?,
            duration_ms = ?,
            total_changes = ?,
            experiments_snapshot = ?,
            changes_since_last_version = ?,
            processing_stats = ?
        WHERE id = ? AND status = 'running'
        """,
        (
            now,
            duration_ms,
            changeset.summary.total_changes,
            snapshot.model_dump_json(),
            changeset.model_dump_json(),
            processing_stats.model_dump_json(),
            version_id,
        ),
    )
    if cursor.rowcount == 0:
        raise _terminal_error(conn, version_id, "complete")


def fail_version(conn: sqlite3.Connection, version_id: int, error: str) -> None:
    """Mark a running version failed with the given error."""
    now = utcnow()
    cursor = conn.execute(
        """
        UPDATE versions
        SET status = 'failed', error = ?, end_time = ?, duration_ms = ?
        WHERE id = ? AND status = 'running'
        """,
        (error, now, _finish_duration(conn, version_id, now), version_id),
    )
    if cursor.rowcount == 0:
        raise _terminal_error(conn, version_id, "fail")


def get_version_by_id(conn: sqlite3.Connection, version_id: int) -> Optional[VersionRecord]:
    return _version(conn.execute("SELECT * FROM versions WHERE id = ?", (version_id,)).fetchone())


def get_version(
    conn: sqlite3.Connection,
    dataset_id: str,
    version_number: int,
    status: Optional[str] = "completed",
) -> Optional[VersionRecord]:
    """Get one version of a dataset. Pass status=None to accept any state."""
    query = "SELECT * FROM versions WHERE dataset_id = ? AND version_number = ?"
    params: list[Any] = [dataset_id, version_number]
    if status is not None:
        query += " AND status = ?"
        params.append(status)
    return _version(conn.execute(query, params).fetchone())


def get_latest_completed(
    conn: sqlite3.Connection,
    dataset_id: str,
    before_version: Optional[int] = None,
) -> Optional[VersionRecord]:
    """The newest completed version, optionally older than before_version."""
    query = "SELECT * FROM versions WHERE dataset_id = ? AND status = 'completed'"
    params: list[Any] = [dataset_id]
    if before_version is not None:
        query += " AND version_number < ?"
        params.append(before_version)
    query += " ORDER BY version_number DESC LIMIT 1"
    return _version(conn.execute(query, params).fetchone())


def get_version_history(
    conn: sqlite3.Connection,
    dataset_id: str,
    page: int = 1,
    limit: int = 20,
    trigger_type: Optional[str] = None,
    status: Optional[str] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
) -> VersionPage:
    """Page through versions newest first. Snapshots are left out."""
    page = max(1, page)
    limit = max(1, limit)
    where = " WHERE dataset_id = ?"
    params: list[Any] = [dataset_id]

    if trigger_type:
        where += " AND trigger_type = ?"
        params.append(normalize_trigger_type(trigger_type))
    if status:
        where += " AND status = ?"
        params.append(status)
    if from_date:
        where += " AND run_timestamp >= ?"
        params.append(from_date)
    if to_date:
        where += " AND run_timestamp <= ?"
        params.append(to_date)

    total = conn.execute(f"SELECT COUNT(*) AS n FROM versions{where}", params).fetchone()["n"]
    rows = conn.execute(
        f"SELECT {_VERSION_SUMMARY_COLUMNS} FROM versions{where}"
        " ORDER BY version_number DESC LIMIT ? OFFSET ?",
        [*params, limit, (page - 1) * limit],
    ).fetchall()

    pages = math.ceil(total / limit) if total else 0
    return VersionPage(
        versions=[VersionRecord.model_validate(dict(row)) for row in rows],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=pages,
            has_next=page < pages,
            has_prev=page > 1,
        ),
    )


def get_completed_versions(
    conn: sqlite3.Connection,
    dataset_id: str,
    from_date: Optional[str] = None,
    include_snapshot: bool = False,
) -> list[VersionRecord]:
    """Completed versions oldest first, optionally from a timestamp on."""
    columns = "*" if include_snapshot else _VERSION_SUMMARY_COLUMNS
    query = f"SELECT {columns} FROM versions WHERE dataset_id = ? AND status = 'completed'"
    params: list[Any] = [dataset_id]
    if from_date:
        query += " AND run_timestamp >= ?"
        params.append(from_date)
    query += " ORDER BY run_timestamp, version_number"
    return [VersionRecord.model_validate(dict(row)) for row in conn.execute(query, params).fetchall()]


def get_running_versions(conn: sqlite3.Connection, dataset_id: Optional[str] = None) -> list[VersionRecord]:
    query = f"SELECT {_VERSION_SUMMARY_COLUMNS} FROM versions WHERE status = 'running'"
    params: list[Any] = []
    if dataset_id is not None:
        query += " AND dataset_id = ?"
        params.append(dataset_id)
    query += " ORDER BY start_time"
    return [VersionRecord.model_validate(dict(row)) for row in conn.execute(query, params).fetchall()]


def fail_stale_versions(
    conn: sqlite3.Connection,
    timeout_seconds: float,
    error: str,
    now: Optional[datetime] = None,
    dataset_id: Optional[str] = None,
) -> list[VersionRecord]:
    """Fail running versions that started more than timeout_seconds ago.

    Returns the versions that were failed.
    """
    stale = [
        version
        for version in get_running_versions(conn, dataset_id)
        if is_stale(version.start_time, timeout_seconds, now)
    ]
    failed: list[VersionRecord] = []
    for version in stale:
        try:
            fail_version(conn, version.id, error)
        except VersionStateError:
            # Finished between the read and the update.
            continue
        failed.append(version)
    return failed


def cleanup_old_versions(conn: sqlite3.Connection, dataset_id: str, keep_versions: int = 50) -> int:
    """Delete terminal versions beyond the newest keep_versions. Returns count deleted."""
    keep_versions = max(1, keep_versions)
    cursor = conn.execute(
        """
        DELETE FROM versions
        WHERE dataset_id = ?
          AND status != 'running'
          AND version_number NOT IN (
              SELECT version_number FROM versions
              WHERE dataset_id = ?
              ORDER BY version_number DESC
              LIMIT ?
          )
        """,
        (dataset_id, dataset_id, keep_versions),
    )
    return cursor.rowcount


def get_version_statistics(conn: sqlite3.Connection, dataset_id: str) -> VersionStatistics:
    row = conn.execute(
        """
        SELECT
            COUNT(*) AS total_versions,
            COALESCE(SUM(total_changes), 0) AS total_changes,
            SUM(CASE WHEN trigger_type = 'manual' THEN 1 ELSE 0 END) AS manual_runs,
            SUM(CASE WHEN trigger_type = 'cron' THEN 1 ELSE 0 END) AS cron_runs,
            MAX(run_timestamp) AS last_run,
            MAX(version_number) AS last_version_number,
            AVG(duration_ms) AS avg_duration_ms
        FROM versions
        WHERE dataset_id = ? AND status = 'completed'
        """,
        (dataset_id,),
    ).fetchone()
    failed = conn.execute(
        "SELECT COUNT(*) AS n FROM versions WHERE dataset_id = ? AND status = 'failed'",
        (dataset_id,),
    ).fetchone()["n"]

    total_versions = row["total_versions"] or 0
    total_changes = row["total_changes"] or 0
    return VersionStatistics(
        total_versions=total_versions,
        total_changes=total_changes,
        avg_changes_per_version=round(total_changes / total_versions, 2) if total_versions else 0.0,
        manual_runs=row["manual_runs"] or 0,
        cron_runs=row["cron_runs"] or 0,
        failed_runs=failed,
        last_run=row["last_run"],
        last_version_number=row["last_version_number"],
        avg_duration_ms=row["avg_duration_ms"],
    )


def search_experiments(
    conn: sqlite3.Connection,
    dataset_id: str,
    query: str,
    version_number: Optional[int] = None,
    domain: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[ExperimentSearchHit]:
    """Find experiments by name or id across completed snapshots, newest first.

    query is a case-insensitive regular expression; invalid patterns are
    matched literally.
    """
    try:
        pattern = re.compile(query, re.IGNORECASE)
    except re.error:
        pattern = re.compile(re.escape(query), re.IGNORECASE)

    sql = "SELECT * FROM versions WHERE dataset_id = ? AND status = 'completed'"
    params: list[Any] = [dataset_id]
    if version_number is not None:
        sql += " AND version_number = ?"
        params.append(version_number)
    sql += " ORDER BY version_number DESC"

    hits: list[ExperimentSearchHit] = []
    for row in conn.execute(sql, params).fetchall():
        version = VersionRecord.model_validate(dict(row))
        if version.experiments_snapshot is None:
            continue
        for experiment in version.experiments_snapshot.all_experiments:
            if domain and experiment.domain != domain:
                continue
            if status and experiment.status.lower() != status.lower():
                continue
            if not (pattern.search(experiment.name) or pattern.search(experiment.id)):
                continue
            hits.append(
                ExperimentSearchHit(
                    version_number=version.version_number,
                    run_timestamp=version.run_timestamp,
                    experiment_id=experiment.id,
                    experiment_name=experiment.name,
                    domain=experiment.domain,
                    url=experiment.url,
                    status=experiment.status,
                    is_active=experiment.is_active,
                )
            )
            if len(hits) >= limit:
                return hits
    return hits


# --- Job Operations ---


def create_job(conn: sqlite3.Connection, job_type: str, payload: Optional[dict[str, JSONValue]] = None) -> int:
    """Create a new queued job and return its ID."""
    cursor = conn.execute(
        "INSERT INTO jobs (job_type, payload, created_at) VALUES (?, ?, ?)",
        (job_type, json.dumps(payload or {}), utcnow()),
    )
    return int(cursor.lastrowid or 0)


def claim_job(
    conn: sqlite3.Connection,
    worker_id: str,
    job_types: Optional[Sequence[str]] = None,
) -> Optional[JobRecord]:
    """
    Atomically claim the next queued job for a worker.

    Uses UPDATE...RETURNING with subquery for atomic claim.
    Returns the job if claimed, None if no jobs are available.
    """
    type_filter = ""
    params: list[Any] = []
    if job_types is not None:
        if not job_types:
            return None
        type_filter = f" AND job_type IN ({', '.join('?' for _ in job_types)})"
        params.extend(job_types)

    try:
        conn.execute("BEGIN IMMEDIATE")

        now = utcnow()
        row = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'running',
                worker_id = ?,
                started_at = ?,
                heartbeat_at = ?
            WHERE id = (
                SELECT id FROM jobs
                WHERE status = 'queued'{type_filter}
                ORDER BY created_at, id
                LIMIT 1
            )
            RETURNING *
            """,
            [worker_id, now, now, *params],
        ).fetchone()
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    if row is None:
        return None
    return JobRecord.model_validate(dict(row))


def update_job_progress(
    conn: sqlite3.Connection,
    job_id: int,
    progress: float,
    partial_result: JSONValue = None,
) -> None:
    """Record progress (0-100) for a running job; doubles as its heartbeat."""
    conn.execute(
        """
        UPDATE jobs
        SET progress = ?, partial_result = COALESCE(?, partial_result), heartbeat_at = ?
        WHERE id = ? AND status = 'running'
        """,
        (min(100.0, max(0.0, progress)), _dumps(partial_result), utcnow(), job_id),
    )


def complete_job(conn: sqlite3.Connection, job_id: int, result: JSONValue = None) -> None:
    conn.execute(
        """
        UPDATE jobs
        SET status = 'completed', progress = 100, result = ?, finished_at = ?
        WHERE id = ?
        """,
        (_dumps(result), utcnow(), job_id),
    )


def fail_job(conn: sqlite3.Connection, job_id: int, error_message: str) -> None:
    conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', error_message = ?, finished_at = ?
        WHERE id = ?
        """,
        (error_message, utcnow(), job_id),
    )


def get_job(conn: sqlite3.Connection, job_id: int) -> Optional[JobRecord]:
    """Get a job by ID."""
    row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    if row is None:
        return None
    return JobRecord.model_validate(dict(row))


def get_active_jobs(conn: sqlite3.Connection) -> list[JobRecord]:
    """Get all queued and running jobs."""
    rows = conn.execute(
        """
        SELECT * FROM jobs
        WHERE status IN ('queued', 'running')
        ORDER BY created_at, id
        """
    ).fetchall()
    return [JobRecord.model_validate(dict(row)) for row in rows]


def has_active_job(conn: sqlite3.Connection, job_type: str, dataset_id: str) -> bool:
    """Whether a queued or running job of job_type exists for dataset_id."""
    row = conn.execute(
        """
        SELECT 1 FROM jobs
        WHERE job_type = ?
          AND status IN ('queued', 'running')
          AND json_extract(payload, '$.dataset_id') = ?
        LIMIT 1
        """,
        (job_type, dataset_id),
    ).fetchone()
    return row is not None


def get_job_counts(conn: sqlite3.Connection) -> dict[str, int]:
    """Number of jobs per status."""
    rows = conn.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status").fetchall()
    return {row["status"]: row["count"] for row in rows}


def fail_stale_jobs(
    conn: sqlite3.Connection,
    timeout_seconds: float,
    now: Optional[datetime] = None,
) -> list[JobRecord]:
    """Fail running jobs whose last heartbeat is older than timeout_seconds."""
    rows = conn.execute(
        """
        SELECT * FROM jobs
        WHERE status = 'running'
          AND COALESCE(heartbeat_at, started_at) < ?
        """,
        (stale_cutoff(timeout_seconds, now),),
    ).fetchall()
    stale = [JobRecord.model_validate(dict(row)) for row in rows]
    for job in stale:
        fail_job(conn, job.id, "Job timed out")
    return stale


def purge_finished_jobs(
    conn: sqlite3.Connection,
    older_than_seconds: float,
    now: Optional[datetime] = None,
) -> int:
    """Delete completed and failed jobs that finished before the cutoff."""
    cursor = conn.execute(
        """
        DELETE FROM jobs
        WHERE status IN ('completed', 'failed')
          AND finished_at < ?
        """,
        (stale_cutoff(older_than_seconds, now),),
    )
    return cursor.rowcount
