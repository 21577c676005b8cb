# Copyright (c) Syntropy Systems
"""Content hashes for experiments and experiment sets."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import cast

from pydantic import BaseModel

from expwatch.models.experiment import Experiment, NormalizedExperiment

NULL_TOKEN = "<null>"
EMPTY_SET_TOKEN = "empty"
SET_SEPARATOR = "|"


def canonical(value: object) -> str:
    """Serialize a value deterministically.

    Mapping keys are sorted at every level; sequences keep their order, so
    callers pass normalized records.
    """
    if isinstance(value, BaseModel):
        return canonical(value.model_dump(mode="json"))
    if value is None:
        return NULL_TOKEN
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, Mapping):
        items = cast("Mapping[object, object]", value)
        parts = [
            f"{json.dumps(str(k), ensure_ascii=False)}:{canonical(items[k])}"
            for k in sorted(items, key=str)
        ]
        return "{" + ",".join(parts) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonical(item) for item in cast("Iterable[object]", value)) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_experiment(normalized: NormalizedExperiment) -> str:
    """SHA-256 of an experiment's content, excluding identity."""
    if isinstance(normalized, Experiment):
        normalized = normalized.content()
    return sha256_hex(canonical(normalized))


def hash_set(experiments: Iterable[Experiment]) -> str:
    """Combine per-experiment hashes into one hash for the whole set.

    Hashes are ordered by experiment identity, so input order is irrelevant.
    """
    ordered = sorted(experiments, key=lambda e: e.key)
    if not ordered:
        return sha256_hex(EMPTY_SET_TOKEN)
    hashes = [e.content_hash or hash_experiment(e) for e in ordered]
    return sha256_hex(SET_SEPARATOR.join(hashes))
