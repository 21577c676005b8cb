# Copyright (c) Syntropy Systems
"""Exceptions raised by expwatch."""

from __future__ import annotations


class ExpwatchError(Exception):
    """Base class for expwatch errors."""


class DatasetNotFoundError(ExpwatchError):
    def __init__(self, dataset_id: str) -> None:
        super().__init__(f"Dataset not found: {dataset_id}")
        self.dataset_id = dataset_id


class DetectionAlreadyRunningError(ExpwatchError):
    """A dataset already has a running version."""

    def __init__(self, dataset_id: str, version_number: int | None = None) -> None:
        msg = f"Change detection already running for dataset {dataset_id}"
        if version_number is not None:
            msg += f" (version {version_number})"
        super().__init__(msg)
        self.dataset_id = dataset_id
        self.version_number = version_number


class VersionConflictError(ExpwatchError):
    """Two writers tried to claim the same version number."""

    def __init__(self, dataset_id: str, version_number: int) -> None:
        super().__init__(
            f"Version {version_number} already exists for dataset {dataset_id}"
        )
        self.dataset_id = dataset_id
        self.version_number = version_number


class VersionStateError(ExpwatchError):
    """Write attempted against a version that is no longer running."""


class VersionNotFoundError(ExpwatchError):
    def __init__(self, dataset_id: str, version_number: int) -> None:
        super().__init__(f"Version {version_number} not found for dataset {dataset_id}")
        self.dataset_id = dataset_id
        self.version_number = version_number


class ScrapeError(ExpwatchError):
    """The scraping collaborator could not produce usable results."""


class NoUrlsError(ScrapeError):
    def __init__(self) -> None:
        super().__init__("No URLs found to scan")


class AllScrapesFailedError(ScrapeError):
    def __init__(self, total: int, first_error: str | None = None) -> None:
        msg = f"All {total} URL scans failed"
        if first_error:
            msg += f": {first_error}"
        super().__init__(msg)
        self.total = total
