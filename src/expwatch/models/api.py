# Copyright (c) Syntropy Systems
"""Pydantic models for expwatch API requests and responses."""

from __future__ import annotations

from pydantic import Field

from .base import ExpwatchBaseModel
from .db import DatasetRecord


class DatasetCreate(ExpwatchBaseModel):
    """Request to create a dataset."""

    name: str
    urls: list[str] = Field(default_factory=list)
    id: str | None = None


class DatasetListResponse(ExpwatchBaseModel):
    datasets: list[DatasetRecord]


class DetectRequest(ExpwatchBaseModel):
    """Request to start change detection."""

    trigger_type: str = "manual"
    triggered_by: str = "api"


class DetectResponse(ExpwatchBaseModel):
    dataset_id: str
    job_id: int
    message: str


class MessageResponse(ExpwatchBaseModel):
    message: str


class ErrorResponse(ExpwatchBaseModel):
    detail: str


class ScheduledTaskResponse(ExpwatchBaseModel):
    name: str
    expression: str
    runs: int = 0
    last_run: str | None = None
    next_run: str | None = None
    last_error: str | None = None


class SchedulerStatusResponse(ExpwatchBaseModel):
    running: bool
    timezone: str
    tasks: list[ScheduledTaskResponse] = Field(default_factory=list)


class SchedulerTriggerRequest(ExpwatchBaseModel):
    task: str = "change_detection"
