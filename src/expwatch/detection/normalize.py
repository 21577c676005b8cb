# Copyright (c) Syntropy Systems
"""Reduce raw scraped experiments to their content-relevant fields.

The output is canonical: every list is sorted, so two scans that observed the
same experiment in a different order normalize to equal records.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import cast

from expwatch.models.base import JSONObject, JSONValue
from expwatch.models.experiment import NormalizedExperiment

ACTIVE_STATUSES = frozenset({"Running", "running"})

# Bookkeeping added by scrapers and stores; never part of experiment content.
VOLATILE_KEYS = frozenset(
    {
        "_id",
        "__v",
        "scrapedAt",
        "scraped_at",
        "createdAt",
        "created_at",
        "updatedAt",
        "updated_at",
        "lastModified",
        "last_modified",
        "contentHash",
        "content_hash",
        "timestamp",
    }
)

VARIATION_DEFAULTS: JSONObject = {
    "id": "",
    "name": "",
    "weight": 0,
    "status": "",
    "actions": [],
}


def _get(raw: Mapping[str, object], *names: str) -> object:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _number(value: object) -> JSONValue:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return value
        return int(parsed) if parsed.is_integer() else parsed
    return 0


def _clean(value: object) -> JSONValue:
    """Drop volatile keys at every level and coerce to plain JSON values."""
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, Mapping):
        return {
            str(k): _clean(v)
            for k, v in cast("Mapping[object, object]", value).items()
            if str(k) not in VOLATILE_KEYS
        }
    if isinstance(value, (list, tuple)):
        return [_clean(item) for item in cast("Iterable[object]", value)]
    return str(value)


def _sort_token(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _keyed_sort(items: list[JSONValue]) -> list[JSONValue]:
    """Order by id, else name, else string form; full content breaks ties."""

    def key(item: JSONValue) -> tuple[str, str]:
        if isinstance(item, dict):
            primary = _text(item.get("id")) or _text(item.get("name"))
        else:
            primary = _text(item)
        return (primary, _sort_token(item))

    return sorted(items, key=key)


def _as_list(value: object) -> list[object]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(cast("Iterable[object]", value))
    return [value]


def _audience_token(value: object) -> str:
    """Audience entries are IDs; mapping entries reduce to their id, else canonical JSON."""
    if value is None:
        return ""
    if isinstance(value, Mapping):
        entry = cast("Mapping[str, object]", value)
        return _text(_get(entry, "id")) or _sort_token(_clean(entry))
    return _text(value)


def _normalize_variation(raw: object) -> JSONObject:
    if not isinstance(raw, Mapping):
        return {**VARIATION_DEFAULTS, "name": _text(raw)}
    variation = cast("Mapping[str, object]", raw)
    cleaned = cast("JSONObject", _clean(variation))
    result: JSONObject = {**VARIATION_DEFAULTS, **cleaned}
    result["id"] = _text(_get(variation, "id"))
    result["name"] = _text(_get(variation, "name"))
    result["weight"] = _number(_get(variation, "weight"))
    result["status"] = _text(_get(variation, "status"))
    result["actions"] = cast("list[JSONValue]", _clean(_as_list(_get(variation, "actions"))))
    return result


def normalize(experiment: object) -> NormalizedExperiment:
    """Normalize one raw experiment record.

    Missing or malformed fields fall back to defaults; anything that is not a
    mapping yields an all-default record.
    """
    if not isinstance(experiment, Mapping):
        return NormalizedExperiment()
    raw = cast("Mapping[str, object]", experiment)

    status = _text(_get(raw, "status"))
    flag = _get(raw, "isActive", "is_active")
    is_active = flag is True or status in ACTIVE_STATUSES

    variations = [_normalize_variation(v) for v in _as_list(_get(raw, "variations")) if v is not None]
    audiences = {
        token
        for token in (_audience_token(a) for a in _as_list(_get(raw, "audience_ids", "audienceIds")))
        if token
    }
    metrics = [_clean(m) for m in _as_list(_get(raw, "metrics")) if m is not None]

    return NormalizedExperiment(
        name=_text(_get(raw, "name")),
        status=status,
        is_active=is_active,
        variations=cast("list[JSONObject]", _keyed_sort(cast("list[JSONValue]", variations))),
        audience_ids=sorted(audiences),
        metrics=_keyed_sort(metrics),
    )


def normalize_all(experiments: Iterable[object]) -> list[NormalizedExperiment]:
    return [normalize(experiment) for experiment in experiments]
