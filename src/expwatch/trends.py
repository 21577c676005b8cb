# Copyright (c) Syntropy Systems
"""Trends, comparisons and summaries over a dataset's completed versions."""

from __future__ import annotations

import calendar
import sqlite3
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Optional

from expwatch.db import (
    format_timestamp,
    get_completed_versions,
    get_dataset,
    get_latest_completed,
    get_version,
    get_version_statistics,
    parse_timestamp,
)
from expwatch.detection.differ import DEFAULT_THRESHOLDS, SignificanceThresholds, diff
from expwatch.errors import DatasetNotFoundError, VersionNotFoundError
from expwatch.models.changes import ChangesByType, Changeset, ChangeSummary
from expwatch.models.db import DetectionStats, VersionRecord
from expwatch.models.experiment import Snapshot
from expwatch.models.reports import (
    ComparedVersion,
    ComparisonSummary,
    DatasetStatistics,
    DomainChanges,
    LatestSummary,
    Significance,
    TrendPoint,
    TrendReport,
    TrendStatistics,
    VersionComparison,
    VersionDetails,
)

# Months covered by each named range.
TIME_RANGES: dict[str, int] = {
    "1month": 1,
    "3months": 3,
    "6months": 6,
    "1year": 12,
}


def months_before(moment: datetime, months: int) -> datetime:
    """Same wall-clock time `months` calendar months earlier, clamping the day."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def format_duration(duration_ms: Optional[float]) -> str:
    """Render milliseconds as "1h 2m 3s", "2m 3s" or "3s"."""
    if duration_ms is None or duration_ms < 0:
        return "N/A"
    seconds = int(duration_ms // 1000)
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def change_summary_text(changeset: Optional[Changeset]) -> str:
    if changeset is None or not changeset.has_changes:
        return "No changes detected"
    counts = changeset.summary.changes_by_type
    parts: list[str] = []
    if counts.NEW:
        parts.append(f"{counts.NEW} new")
    if counts.REMOVED:
        parts.append(f"{counts.REMOVED} removed")
    if counts.STATUS_CHANGED:
        noun = "status change" if counts.STATUS_CHANGED == 1 else "status changes"
        parts.append(f"{counts.STATUS_CHANGED} {noun}")
    if counts.MODIFIED:
        parts.append(f"{counts.MODIFIED} modified")
    return ", ".join(parts)


def change_significance(summary: Optional[ChangeSummary]) -> Significance:
    if summary is None or summary.total_changes == 0:
        return "none"
    if summary.total_changes >= 20 or summary.affected_domains_count >= 10:
        return "high"
    if summary.total_changes >= 10 or summary.affected_domains_count >= 5:
        return "medium"
    return "low"


def _trend_point(version: VersionRecord) -> TrendPoint:
    changeset = version.changes_since_last_version or Changeset()
    summary = changeset.summary
    totals = _snapshot_totals(version)
    return TrendPoint(
        version_number=version.version_number,
        date=version.run_timestamp,
        trigger_type=version.trigger_type,
        total_experiments=totals[0],
        total_domains=totals[1],
        active_experiments=totals[2],
        total_changes=summary.total_changes,
        changes_by_type=summary.changes_by_type,
        significant_changes=summary.significant_changes,
    )


def _snapshot_totals(version: VersionRecord) -> tuple[int, int, int]:
    snapshot = version.experiments_snapshot
    if snapshot is None:
        return (0, 0, 0)
    return (snapshot.total_experiments, snapshot.total_domains, snapshot.active_experiments)


def calculate_trend_statistics(points: Sequence[TrendPoint]) -> TrendStatistics:
    if not points:
        return TrendStatistics()

    total_changes = sum(p.total_changes for p in points)
    by_type = ChangesByType()
    month_changes: Counter[str] = Counter()
    for point in points:
        by_type = by_type + point.changes_by_type
        month_changes[point.date[:7]] += point.total_changes

    most_active_month = None
    if total_changes:
        # Earliest month wins ties.
        most_active_month = max(sorted(month_changes), key=lambda month: month_changes[month])

    first = points[0].total_experiments
    last = points[-1].total_experiments
    growth_rate = 0.0
    if len(points) >= 2 and first:
        growth_rate = round((last - first) / first * 100, 2)

    return TrendStatistics(
        avg_changes_per_run=round(total_changes / len(points), 2),
        most_active_month=most_active_month,
        total_changes_by_type=by_type,
        growth_rate=growth_rate,
    )


def get_trends(
    conn: sqlite3.Connection,
    dataset_id: str,
    time_range: str = "6months",
    now: Optional[datetime] = None,
) -> TrendReport:
    """Per-version change counts for completed versions inside time_range."""
    if time_range not in TIME_RANGES:
        msg = f"Unknown time range '{time_range}'. Choose from: {', '.join(TIME_RANGES)}"
        raise ValueError(msg)
    if now is None:
        now = datetime.now(timezone.utc)
    since = format_timestamp(months_before(now, TIME_RANGES[time_range]))

    versions = get_completed_versions(conn, dataset_id, from_date=since, include_snapshot=True)
    points = [_trend_point(v) for v in versions]
    return TrendReport(
        dataset_id=dataset_id,
        time_range=time_range,
        trends=points,
        statistics=calculate_trend_statistics(points),
    )


def _compared(version: VersionRecord) -> ComparedVersion:
    totals = _snapshot_totals(version)
    return ComparedVersion(
        version_number=version.version_number,
        run_timestamp=version.run_timestamp,
        total_experiments=totals[0],
        total_domains=totals[1],
    )


def compare_versions(
    conn: sqlite3.Connection,
    dataset_id: str,
    version_a: int,
    version_b: int,
    thresholds: SignificanceThresholds = DEFAULT_THRESHOLDS,
) -> VersionComparison:
    """Diff two completed versions, oldest against newest, in either argument order."""
    older_number, newer_number = sorted((version_a, version_b))
    older = get_version(conn, dataset_id, older_number)
    if older is None:
        raise VersionNotFoundError(dataset_id, older_number)
    newer = get_version(conn, dataset_id, newer_number)
    if newer is None:
        raise VersionNotFoundError(dataset_id, newer_number)

    older_snapshot = older.experiments_snapshot or Snapshot()
    newer_snapshot = newer.experiments_snapshot or Snapshot()
    changes = diff(
        older_snapshot.all_experiments,
        newer_snapshot.all_experiments,
        thresholds=thresholds,
        previous_version_number=older.version_number,
        previous_run_timestamp=older.run_timestamp,
    )

    elapsed = parse_timestamp(newer.run_timestamp) - parse_timestamp(older.run_timestamp)
    return VersionComparison(
        dataset_id=dataset_id,
        from_version=_compared(older),
        to_version=_compared(newer),
        changes=changes,
        domain_changes=DomainChanges(
            new_domains=sorted(newer_snapshot.domains - older_snapshot.domains),
            removed_domains=sorted(older_snapshot.domains - newer_snapshot.domains),
        ),
        summary=ComparisonSummary(
            time_between_versions_ms=int(elapsed.total_seconds() * 1000),
            experiments_change=newer_snapshot.total_experiments - older_snapshot.total_experiments,
            domains_change=newer_snapshot.total_domains - older_snapshot.total_domains,
        ),
    )


def get_latest_summary(conn: sqlite3.Connection, dataset_id: str) -> Optional[LatestSummary]:
    """Summary of the newest completed version, or None before the first run."""
    latest = get_latest_completed(conn, dataset_id)
    if latest is None:
        return None
    changeset = latest.changes_since_last_version or Changeset()
    totals = _snapshot_totals(latest)
    return LatestSummary(
        dataset_id=dataset_id,
        version_number=latest.version_number,
        run_timestamp=latest.run_timestamp,
        trigger_type=latest.trigger_type,
        total_experiments=totals[0],
        total_domains=totals[1],
        active_experiments=totals[2],
        has_changes=changeset.has_changes,
        total_changes=changeset.summary.total_changes,
        changes_by_type=changeset.summary.changes_by_type,
        significant_changes=changeset.summary.significant_changes,
        change_summary=change_summary_text(changeset),
        duration=format_duration(latest.duration_ms),
    )


def get_version_details(conn: sqlite3.Connection, dataset_id: str, version_number: int) -> VersionDetails:
    """One version in any state, with display helpers filled in."""
    version = get_version(conn, dataset_id, version_number, status=None)
    if version is None:
        raise VersionNotFoundError(dataset_id, version_number)
    changeset = version.changes_since_last_version
    return VersionDetails(
        version=version,
        formatted_duration=format_duration(version.duration_ms),
        change_summary=change_summary_text(changeset),
        change_significance=change_significance(changeset.summary if changeset else None),
    )


def get_dataset_statistics(conn: sqlite3.Connection, dataset_id: str) -> DatasetStatistics:
    dataset = get_dataset(conn, dataset_id)
    if dataset is None:
        raise DatasetNotFoundError(dataset_id)
    versions = get_version_statistics(conn, dataset_id)
    return DatasetStatistics(
        dataset_id=dataset_id,
        versions=versions,
        detection=dataset.change_detection_stats or DetectionStats(),
        avg_duration=format_duration(versions.avg_duration_ms),
    )
