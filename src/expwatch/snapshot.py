# Copyright (c) Syntropy Systems
"""Build experiment records and scan snapshots from scrape results."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import cast

from expwatch.detection.hashing import hash_experiment
from expwatch.detection.normalize import normalize
from expwatch.models.experiment import (
    DomainExperiments,
    Experiment,
    ProcessingError,
    ProcessingStats,
    Snapshot,
)
from expwatch.models.scrape import ScrapeFailure, ScrapeResult, ScrapeSuccess


def build_experiment(raw: object, domain: str | None = None, url: str | None = None) -> Experiment:
    """Normalize a raw experiment and attach identity and content hash.

    domain and url default to the values carried by the record itself.
    """
    fields: Mapping[str, object] = cast("Mapping[str, object]", raw) if isinstance(raw, Mapping) else {}
    content = normalize(raw)
    raw_id = fields.get("id")
    return Experiment(
        **content.model_dump(),
        id="" if raw_id is None else str(raw_id),
        domain=domain if domain is not None else str(fields.get("domain") or ""),
        url=url if url is not None else str(fields.get("url") or ""),
        content_hash=hash_experiment(content),
    )


def coerce_experiments(items: object) -> list[Experiment]:
    """Accept stored records or raw mappings; anything else counts as empty."""
    if items is None or isinstance(items, (str, bytes, Mapping)):
        return []
    if not isinstance(items, Iterable):
        return []
    experiments: list[Experiment] = []
    for item in cast("Iterable[object]", items):
        if isinstance(item, Experiment):
            experiments.append(item)
        elif isinstance(item, Mapping):
            experiments.append(build_experiment(item))
    return experiments


def snapshot_from_experiments(experiments: Iterable[Experiment]) -> Snapshot:
    """Group experiments by domain, keeping the first URL seen per domain."""
    all_experiments = list(experiments)
    groups: dict[str, list[Experiment]] = {}
    first_url: dict[str, str] = {}
    for experiment in all_experiments:
        groups.setdefault(experiment.domain, []).append(experiment)
        first_url.setdefault(experiment.domain, experiment.url)

    by_domain = [
        DomainExperiments(
            domain=domain,
            url=first_url[domain],
            experiments_count=len(items),
            experiments=items,
        )
        for domain, items in sorted(groups.items())
    ]
    return Snapshot(
        total_experiments=len(all_experiments),
        total_domains=len(by_domain),
        active_experiments=sum(1 for e in all_experiments if e.is_active),
        experiments_by_domain=by_domain,
        all_experiments=all_experiments,
    )


def build_snapshot(results: Iterable[ScrapeResult]) -> tuple[Snapshot, ProcessingStats]:
    """Turn one scan's scrape results into a snapshot and processing stats."""
    experiments: list[Experiment] = []
    errors: list[ProcessingError] = []
    total = successful = failed = 0
    optimizely_domains: set[str] = set()

    for result in results:
        total += 1
        if isinstance(result, ScrapeFailure):
            failed += 1
            errors.append(ProcessingError(domain=result.domain, url=result.url, error=result.error))
            continue
        assert isinstance(result, ScrapeSuccess)
        successful += 1
        if result.has_optimizely:
            optimizely_domains.add(result.domain)
        experiments.extend(
            build_experiment(raw, domain=result.domain, url=result.url)
            for raw in result.experiments
        )

    stats = ProcessingStats(
        total_urls_processed=total,
        successful_scans=successful,
        failed_scans=failed,
        domains_with_optimizely=len(optimizely_domains),
        processing_errors=errors,
    )
    return snapshot_from_experiments(experiments), stats
