# Copyright (c) Syntropy Systems
"""Experiment, snapshot and scan statistics models."""

from __future__ import annotations

from typing import NamedTuple

from pydantic import Field

from .base import ExpwatchBaseModel, FrozenModel, JSONObject, JSONValue


class ExperimentKey(NamedTuple):
    """Identity of an experiment. The id alone is not unique across sites."""

    domain: str
    url: str
    id: str

    def __str__(self) -> str:
        return f"{self.domain}|{self.url}|{self.id}"


class NormalizedExperiment(FrozenModel):
    """Content-relevant fields of an experiment in canonical order."""

    name: str = ""
    status: str = ""
    is_active: bool = False
    variations: list[JSONObject] = Field(default_factory=list)
    audience_ids: list[str] = Field(default_factory=list)
    metrics: list[JSONValue] = Field(default_factory=list)


class Experiment(NormalizedExperiment):
    """One observed experiment: identity, normalized content and its hash."""

    id: str = ""
    domain: str = ""
    url: str = ""
    content_hash: str = ""

    @property
    def key(self) -> ExperimentKey:
        return ExperimentKey(self.domain, self.url, self.id)

    def content(self) -> NormalizedExperiment:
        """Strip identity and hash, leaving what the content hash covers."""
        return NormalizedExperiment.model_validate(
            self.model_dump(include=set(NormalizedExperiment.model_fields))
        )


class DomainExperiments(FrozenModel):
    domain: str
    url: str = ""
    experiments_count: int = 0
    experiments: list[Experiment] = Field(default_factory=list)


class Snapshot(FrozenModel):
    """All experiments observed in one scan of a dataset."""

    total_experiments: int = 0
    total_domains: int = 0
    active_experiments: int = 0
    experiments_by_domain: list[DomainExperiments] = Field(default_factory=list)
    all_experiments: list[Experiment] = Field(default_factory=list)

    @property
    def domains(self) -> set[str]:
        return {group.domain for group in self.experiments_by_domain}


class ProcessingError(ExpwatchBaseModel):
    domain: str
    url: str
    error: str


class ProcessingStats(ExpwatchBaseModel):
    """Per-scan counters and the list of URLs that could not be scanned."""

    total_urls_processed: int = 0
    successful_scans: int = 0
    failed_scans: int = 0
    domains_with_optimizely: int = 0
    processing_errors: list[ProcessingError] = Field(default_factory=list)
