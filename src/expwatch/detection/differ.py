# Copyright (c) Syntropy Systems
"""Classify differences between two experiment collections."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from expwatch.detection.hashing import canonical, hash_experiment, hash_set
from expwatch.models.base import JSONObject, JSONValue
from expwatch.models.changes import (
    ChangeDetails,
    ChangesByType,
    Changeset,
    ChangeSummary,
    FieldChange,
    ModifiedExperimentChange,
    NewExperimentChange,
    RemovedExperimentChange,
    StatusChange,
)
from expwatch.models.experiment import Experiment, ExperimentKey
from expwatch.snapshot import coerce_experiments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignificanceThresholds:
    """A changeset is significant when either count is exceeded."""

    total_changes: int = 10
    affected_domains: int = 5


DEFAULT_THRESHOLDS = SignificanceThresholds()


class FieldKind(str, Enum):
    TEXT = "text"
    FLAG = "flag"
    SET = "set"
    KEYED = "keyed"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind


# Every hashed content field appears here, so a hash mismatch always yields
# at least one changed field.
COMPARISON_SCHEMA: tuple[FieldSpec, ...] = (
    FieldSpec("name", FieldKind.TEXT),
    FieldSpec("status", FieldKind.TEXT),
    FieldSpec("is_active", FieldKind.FLAG),
    FieldSpec("variations", FieldKind.KEYED),
    FieldSpec("audience_ids", FieldKind.SET),
    FieldSpec("metrics", FieldKind.KEYED),
)

Comparator = Callable[[JSONValue, JSONValue], Optional[JSONObject]]


def _compare_scalar(old: JSONValue, new: JSONValue) -> Optional[JSONObject]:
    if old == new and type(old) is type(new):
        return None
    return {}


def _compare_set(old: JSONValue, new: JSONValue) -> Optional[JSONObject]:
    old_items = {canonical(v): v for v in (old if isinstance(old, list) else [])}
    new_items = {canonical(v): v for v in (new if isinstance(new, list) else [])}
    if old_items.keys() == new_items.keys():
        return None
    return {
        "added": [new_items[k] for k in sorted(new_items.keys() - old_items.keys())],
        "removed": [old_items[k] for k in sorted(old_items.keys() - new_items.keys())],
    }


def _item_key(item: JSONValue) -> str:
    if isinstance(item, dict):
        for name in ("id", "name"):
            value = item.get(name)
            if value not in (None, ""):
                return str(value)
        return canonical(item)
    return str(item)


def _compare_keyed(old: JSONValue, new: JSONValue) -> Optional[JSONObject]:
    old_list = old if isinstance(old, list) else []
    new_list = new if isinstance(new, list) else []
    if canonical(sorted(map(canonical, old_list))) == canonical(sorted(map(canonical, new_list))):
        return None
    old_keyed = {_item_key(v): canonical(v) for v in old_list}
    new_keyed = {_item_key(v): canonical(v) for v in new_list}
    return {
        "old_count": len(old_list),
        "new_count": len(new_list),
        "count_change": len(new_list) - len(old_list),
        "added": sorted(new_keyed.keys() - old_keyed.keys()),
        "removed": sorted(old_keyed.keys() - new_keyed.keys()),
        "changed": sorted(k for k in old_keyed.keys() & new_keyed.keys() if old_keyed[k] != new_keyed[k]),
    }


COMPARATORS: dict[FieldKind, Comparator] = {
    FieldKind.TEXT: _compare_scalar,
    FieldKind.FLAG: _compare_scalar,
    FieldKind.SET: _compare_set,
    FieldKind.KEYED: _compare_keyed,
}


def compare_fields(previous: Experiment, current: Experiment) -> list[FieldChange]:
    """Field-level differences in schema order."""
    old_values = previous.model_dump(mode="json")
    new_values = current.model_dump(mode="json")
    changes: list[FieldChange] = []
    for spec in COMPARISON_SCHEMA:
        old = old_values.get(spec.name)
        new = new_values.get(spec.name)
        details = COMPARATORS[spec.kind](old, new)
        if details is None:
            continue
        changes.append(
            FieldChange(field=spec.name, old_value=old, new_value=new, details=details or None)
        )
    return changes


def _index(experiments: object) -> dict[ExperimentKey, Experiment]:
    # Later duplicates of the same identity win.
    return {e.key: e for e in coerce_experiments(experiments)}


def _by_domain(index: Mapping[ExperimentKey, Experiment]) -> dict[str, dict[ExperimentKey, Experiment]]:
    grouped: dict[str, dict[ExperimentKey, Experiment]] = {}
    for key, experiment in index.items():
        grouped.setdefault(key.domain, {})[key] = experiment
    return grouped


def _content_hash(experiment: Experiment) -> str:
    return experiment.content_hash or hash_experiment(experiment)


def diff(
    previous: object,
    current: object,
    *,
    first_version: bool = False,
    thresholds: SignificanceThresholds = DEFAULT_THRESHOLDS,
    previous_version_number: int | None = None,
    previous_run_timestamp: str | None = None,
) -> Changeset:
    """Compare two experiment collections keyed by (domain, url, id).

    Either side may be None or malformed; it is treated as empty. With
    first_version set, the previous side is ignored and every current
    experiment is NEW.
    """
    prev_index = {} if first_version else _index(previous)
    cur_index = _index(current)

    new: list[NewExperimentChange] = []
    removed: list[RemovedExperimentChange] = []
    status_changes: list[StatusChange] = []
    modified: list[ModifiedExperimentChange] = []

    prev_domains = _by_domain(prev_index)
    cur_domains = _by_domain(cur_index)

    for domain in sorted(prev_domains.keys() | cur_domains.keys()):
        before = prev_domains.get(domain, {})
        after = cur_domains.get(domain, {})
        if before.keys() == after.keys() and hash_set(before.values()) == hash_set(after.values()):
            continue

        for key in sorted(before.keys() | after.keys()):
            old = before.get(key)
            cur = after.get(key)
            if old is None and cur is not None:
                new.append(
                    NewExperimentChange(
                        experiment_id=cur.id,
                        experiment_name=cur.name,
                        domain=cur.domain,
                        url=cur.url,
                        status=cur.status,
                        is_active=cur.is_active,
                    )
                )
            elif cur is None and old is not None:
                removed.append(
                    RemovedExperimentChange(
                        experiment_id=old.id,
                        experiment_name=old.name,
                        domain=old.domain,
                        url=old.url,
                        previous_status=old.status,
                    )
                )
            elif old is not None and cur is not None:
                if _content_hash(old) == _content_hash(cur):
                    continue
                field_changes = compare_fields(old, cur)
                if not field_changes:
                    logger.warning("Hash mismatch without field differences for %s", key)
                    continue
                names = [c.field for c in field_changes]
                if old.status != cur.status:
                    status_changes.append(
                        StatusChange(
                            experiment_id=cur.id,
                            experiment_name=cur.name,
                            domain=cur.domain,
                            url=cur.url,
                            previous_status=old.status,
                            new_status=cur.status,
                            changed_fields=names,
                            detailed_changes=field_changes,
                        )
                    )
                else:
                    modified.append(
                        ModifiedExperimentChange(
                            experiment_id=cur.id,
                            experiment_name=cur.name,
                            domain=cur.domain,
                            url=cur.url,
                            modified_fields=names,
                            detailed_changes=field_changes,
                        )
                    )

    details = ChangeDetails(
        new_experiments=new,
        removed_experiments=removed,
        status_changes=status_changes,
        modified_experiments=modified,
    )
    return Changeset(
        has_changes=bool(new or removed or status_changes or modified),
        previous_version_number=previous_version_number,
        previous_run_timestamp=previous_run_timestamp,
        change_details=details,
        summary=summarize(details, thresholds),
    )


def summarize(details: ChangeDetails, thresholds: SignificanceThresholds = DEFAULT_THRESHOLDS) -> ChangeSummary:
    by_type = ChangesByType(
        NEW=len(details.new_experiments),
        REMOVED=len(details.removed_experiments),
        STATUS_CHANGED=len(details.status_changes),
        MODIFIED=len(details.modified_experiments),
    )
    total = by_type.NEW + by_type.REMOVED + by_type.STATUS_CHANGED + by_type.MODIFIED
    domains = sorted(
        {
            entry.domain
            for group in (
                details.new_experiments,
                details.removed_experiments,
                details.status_changes,
                details.modified_experiments,
            )
            for entry in group
        }
    )
    return ChangeSummary(
        total_changes=total,
        changes_by_type=by_type,
        affected_domains=domains,
        affected_domains_count=len(domains),
        significant_changes=total > thresholds.total_changes
        or len(domains) > thresholds.affected_domains,
    )
