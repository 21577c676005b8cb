# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Optional, cast

from pydantic import Field, TypeAdapter, field_validator

from .base import ExpwatchBaseModel, JSONValue
from .changes import Changeset
from .experiment import ProcessingStats, Snapshot

_LIST_STR_ADAPTER = TypeAdapter(list[str])
_JSON_ADAPTER = TypeAdapter(JSONValue)

DATASET_STATUSES = ("not_started", "pending", "in_progress", "completed", "failed")
VERSION_STATUSES = ("running", "completed", "failed")
TRIGGER_TYPES = ("manual", "cron")


def normalize_trigger_type(trigger_type: str) -> str:
    """Map accepted aliases onto the stored trigger vocabulary."""
    value = trigger_type.strip().lower()
    if value == "scheduled":
        return "cron"
    if value not in TRIGGER_TYPES:
        msg = f"Unknown trigger type: {trigger_type}"
        raise ValueError(msg)
    return value


class DetectionStats(ExpwatchBaseModel):
    """Running counters kept on a dataset."""

    total_versions: int = 0
    last_version_number: int = 0
    total_changes_detected: int = 0
    last_run_duration: Optional[str] = None
    manual_runs: int = 0
    cron_runs: int = 0


class DatasetRecord(ExpwatchBaseModel):
    """Database dataset record."""

    id: str
    name: str
    urls: list[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    change_detection_status: str = "not_started"
    change_detection_started_at: Optional[str] = None
    change_detection_completed_at: Optional[str] = None
    change_detection_error: Optional[str] = None
    last_change_detection_run: Optional[str] = None
    change_detection_stats: DetectionStats = Field(default_factory=DetectionStats)

    @field_validator("urls", mode="before")
    @classmethod
    def _parse_urls(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return _LIST_STR_ADAPTER.validate_json(value)
        return cast("list[str]", value)

    @field_validator("change_detection_stats", mode="before")
    @classmethod
    def _parse_stats(cls, value: object) -> object:
        if value is None:
            return DetectionStats()
        if isinstance(value, str):
            return DetectionStats.model_validate_json(value)
        return value


class VersionRecord(ExpwatchBaseModel):
    """Database version record."""

    id: int
    dataset_id: str
    dataset_name: Optional[str] = None
    version_number: int
    trigger_type: str
    triggered_by: Optional[str] = None
    run_timestamp: str
    status: str
    error: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_ms: Optional[int] = None
    total_changes: int = 0
    experiments_snapshot: Optional[Snapshot] = None
    changes_since_last_version: Optional[Changeset] = None
    processing_stats: Optional[ProcessingStats] = None

    @field_validator("experiments_snapshot", mode="before")
    @classmethod
    def _parse_snapshot(cls, value: object) -> object:
        if isinstance(value, str):
            return Snapshot.model_validate_json(value)
        return value

    @field_validator("changes_since_last_version", mode="before")
    @classmethod
    def _parse_changeset(cls, value: object) -> object:
        if isinstance(value, str):
            return Changeset.model_validate_json(value)
        return value

    @field_validator("processing_stats", mode="before")
    @classmethod
    def _parse_processing_stats(cls, value: object) -> object:
        if isinstance(value, str):
            return ProcessingStats.model_validate_json(value)
        return value


class JobRecord(ExpwatchBaseModel):
    """Database job record."""

    id: int
    job_type: str
    payload: dict[str, JSONValue] = Field(default_factory=dict)
    status: str
    progress: float = 0.0
    partial_result: JSONValue = None
    result: JSONValue = None
    error_message: Optional[str] = None
    attempt: int = 1
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    worker_id: Optional[str] = None
    heartbeat_at: Optional[str] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _parse_payload(cls, value: object) -> object:
        if value is None:
            return {}
        if isinstance(value, str):
            return _JSON_ADAPTER.validate_json(value)
        return value

    @field_validator("partial_result", "result", mode="before")
    @classmethod
    def _parse_result(cls, value: object) -> object:
        if isinstance(value, str):
            return _JSON_ADAPTER.validate_json(value)
        return value


class ScrapeOptions(ExpwatchBaseModel):
    """Scrape batching chosen for the current queue load."""

    concurrent: int
    delay_ms: int
    load_level: str = "single"


class QueueStats(ExpwatchBaseModel):
    total: int = 0
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    max_concurrent_jobs: int = 0
    scrape_options: Optional[ScrapeOptions] = None


class Pagination(ExpwatchBaseModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool


class VersionPage(ExpwatchBaseModel):
    versions: list[VersionRecord] = Field(default_factory=list)
    pagination: Pagination


class VersionStatistics(ExpwatchBaseModel):
    """Aggregates over the completed versions of one dataset."""

    total_versions: int = 0
    total_changes: int = 0
    avg_changes_per_version: float = 0.0
    manual_runs: int = 0
    cron_runs: int = 0
    failed_runs: int = 0
    last_run: Optional[str] = None
    last_version_number: Optional[int] = None
    avg_duration_ms: Optional[float] = None


class ExperimentSearchHit(ExpwatchBaseModel):
    version_number: int
    run_timestamp: str
    experiment_id: str
    experiment_name: str
    domain: str
    url: str
    status: str
    is_active: bool
