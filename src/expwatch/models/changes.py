# Copyright (c) Syntropy Systems
"""Changeset models produced by the differ."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field

from .base import FrozenModel, JSONObject, JSONValue


class ChangeType(str, Enum):
    NEW = "NEW"
    REMOVED = "REMOVED"
    STATUS_CHANGED = "STATUS_CHANGED"
    MODIFIED = "MODIFIED"


class FieldChange(FrozenModel):
    """Before/after values of one compared field."""

    field: str
    old_value: JSONValue = None
    new_value: JSONValue = None
    details: Optional[JSONObject] = None


class ChangeEntry(FrozenModel):
    experiment_id: str
    experiment_name: str = ""
    domain: str
    url: str
    change_type: ChangeType


class NewExperimentChange(ChangeEntry):
    change_type: ChangeType = ChangeType.NEW
    status: str = ""
    is_active: bool = False


class RemovedExperimentChange(ChangeEntry):
    change_type: ChangeType = ChangeType.REMOVED
    previous_status: str = ""


class StatusChange(ChangeEntry):
    change_type: ChangeType = ChangeType.STATUS_CHANGED
    previous_status: str = ""
    new_status: str = ""
    changed_fields: list[str] = Field(default_factory=list)
    detailed_changes: list[FieldChange] = Field(default_factory=list)


class ModifiedExperimentChange(ChangeEntry):
    change_type: ChangeType = ChangeType.MODIFIED
    modified_fields: list[str] = Field(default_factory=list)
    detailed_changes: list[FieldChange] = Field(default_factory=list)


class ChangeDetails(FrozenModel):
    new_experiments: list[NewExperimentChange] = Field(default_factory=list)
    removed_experiments: list[RemovedExperimentChange] = Field(default_factory=list)
    status_changes: list[StatusChange] = Field(default_factory=list)
    modified_experiments: list[ModifiedExperimentChange] = Field(default_factory=list)


class ChangesByType(FrozenModel):
    NEW: int = 0
    REMOVED: int = 0
    STATUS_CHANGED: int = 0
    MODIFIED: int = 0

    def __add__(self, other: ChangesByType) -> ChangesByType:
        return ChangesByType(
            NEW=self.NEW + other.NEW,
            REMOVED=self.REMOVED + other.REMOVED,
            STATUS_CHANGED=self.STATUS_CHANGED + other.STATUS_CHANGED,
            MODIFIED=self.MODIFIED + other.MODIFIED,
        )


class ChangeSummary(FrozenModel):
    total_changes: int = 0
    changes_by_type: ChangesByType = Field(default_factory=ChangesByType)
    affected_domains: list[str] = Field(default_factory=list)
    affected_domains_count: int = 0
    significant_changes: bool = False


class Changeset(FrozenModel):
    """Differences between two snapshots, as persisted on a version."""

    has_changes: bool = False
    previous_version_number: Optional[int] = None
    previous_run_timestamp: Optional[str] = None
    change_details: ChangeDetails = Field(default_factory=ChangeDetails)
    summary: ChangeSummary = Field(default_factory=ChangeSummary)
