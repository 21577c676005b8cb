# Copyright (c) Syntropy Systems
"""Normalization, hashing and diffing of experiment collections."""

from expwatch.detection.differ import DEFAULT_THRESHOLDS, SignificanceThresholds, diff
from expwatch.detection.hashing import hash_experiment, hash_set
from expwatch.detection.normalize import normalize, normalize_all

__all__ = [
    "DEFAULT_THRESHOLDS",
    "SignificanceThresholds",
    "diff",
    "hash_experiment",
    "hash_set",
    "normalize",
    "normalize_all",
]
