# Copyright (c) Syntropy Systems
"""Read-side models: trends, comparisons, summaries and detection results."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from .base import ExpwatchBaseModel
from .changes import ChangesByType, Changeset
from .db import DetectionStats, VersionRecord, VersionStatistics

Significance = Literal["none", "low", "medium", "high"]


class TrendPoint(ExpwatchBaseModel):
    version_number: int
    date: str
    trigger_type: str
    total_experiments: int = 0
    total_domains: int = 0
    active_experiments: int = 0
    total_changes: int = 0
    changes_by_type: ChangesByType = Field(default_factory=ChangesByType)
    significant_changes: bool = False


class TrendStatistics(ExpwatchBaseModel):
    avg_changes_per_run: float = 0.0
    most_active_month: Optional[str] = None
    total_changes_by_type: ChangesByType = Field(default_factory=ChangesByType)
    growth_rate: float = 0.0


class TrendReport(ExpwatchBaseModel):
    dataset_id: str
    time_range: str
    trends: list[TrendPoint] = Field(default_factory=list)
    statistics: TrendStatistics = Field(default_factory=TrendStatistics)


class ComparedVersion(ExpwatchBaseModel):
    version_number: int
    run_timestamp: str
    total_experiments: int = 0
    total_domains: int = 0


class DomainChanges(ExpwatchBaseModel):
    new_domains: list[str] = Field(default_factory=list)
    removed_domains: list[str] = Field(default_factory=list)


class ComparisonSummary(ExpwatchBaseModel):
    time_between_versions_ms: int = 0
    experiments_change: int = 0
    domains_change: int = 0


class VersionComparison(ExpwatchBaseModel):
    dataset_id: str
    from_version: ComparedVersion
    to_version: ComparedVersion
    changes: Changeset
    domain_changes: DomainChanges
    summary: ComparisonSummary


class LatestSummary(ExpwatchBaseModel):
    dataset_id: str
    version_number: int
    run_timestamp: str
    trigger_type: str
    total_experiments: int = 0
    total_domains: int = 0
    active_experiments: int = 0
    has_changes: bool = False
    total_changes: int = 0
    changes_by_type: ChangesByType = Field(default_factory=ChangesByType)
    significant_changes: bool = False
    change_summary: str = ""
    duration: str = "N/A"


class VersionDetails(ExpwatchBaseModel):
    version: VersionRecord
    formatted_duration: str
    change_summary: str
    change_significance: Significance


class DatasetStatistics(ExpwatchBaseModel):
    dataset_id: str
    versions: VersionStatistics
    detection: DetectionStats
    avg_duration: str = "N/A"


class DetectionResult(ExpwatchBaseModel):
    """Outcome of one detection run."""

    dataset_id: str
    version_number: int
    status: Literal["completed", "failed"]
    has_changes: bool = False
    total_changes: int = 0
    changes_by_type: ChangesByType = Field(default_factory=ChangesByType)
    significant_changes: bool = False
    urls_scanned: int = 0
    successful_scans: int = 0
    failed_scans: int = 0
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class BatchItem(ExpwatchBaseModel):
    dataset_id: str
    dataset_name: str
    outcome: Literal["started", "completed", "skipped", "failed"]
    job_id: Optional[int] = None
    version_number: Optional[int] = None
    error: Optional[str] = None


class BatchResult(ExpwatchBaseModel):
    total_datasets: int = 0
    started: int = 0
    skipped: int = 0
    failed: int = 0
    items: list[BatchItem] = Field(default_factory=list)


class TimedOutVersion(ExpwatchBaseModel):
    dataset_id: str
    version_number: int
    start_time: Optional[str] = None


class RecoveryResult(ExpwatchBaseModel):
    restarted_datasets: list[str] = Field(default_factory=list)
    timed_out_versions: list[TimedOutVersion] = Field(default_factory=list)
    failed_jobs: list[int] = Field(default_factory=list)
    purged_jobs: int = 0


class DetectionStatus(ExpwatchBaseModel):
    dataset_id: str
    dataset_name: str
    change_detection_status: str
    change_detection_started_at: Optional[str] = None
    change_detection_completed_at: Optional[str] = None
    change_detection_error: Optional[str] = None
    last_change_detection_run: Optional[str] = None
    stats: DetectionStats = Field(default_factory=DetectionStats)
    running_version: Optional[int] = None
    latest_version: Optional[int] = None
    latest_version_timestamp: Optional[str] = None
