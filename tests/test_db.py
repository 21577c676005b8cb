# Copyright (c) Syntropy Systems
"""Tests for database operations."""

from datetime import datetime, timedelta, timezone

import pytest

from expwatch.db import (
    claim_job,
    cleanup_old_versions,
    complete_dataset_detection,
    complete_job,
    complete_version,
    create_dataset,
    create_job,
    create_running_version,
    fail_stale_jobs,
    fail_stale_versions,
    fail_version,
    get_active_jobs,
    get_completed_versions,
    get_dataset,
    get_datasets,
    get_job,
    get_latest_completed,
    get_stale_pending_datasets,
    get_version,
    get_version_by_id,
    get_version_history,
    get_version_statistics,
    is_stale,
    next_version_number,
    require_dataset,
    search_experiments,
    set_dataset_pending,
    start_dataset_detection,
    update_dataset_urls,
    update_job_progress,
)
from expwatch.detection.differ import diff
from expwatch.errors import (
    DatasetNotFoundError,
    DetectionAlreadyRunningError,
    VersionConflictError,
    VersionStateError,
)
from expwatch.models.experiment import ProcessingStats
from expwatch.snapshot import build_experiment, snapshot_from_experiments


def experiments(*specs):
    """Build experiments from (id, name, status) tuples on shop.example.com."""
    return [
        build_experiment(
            {"id": exp_id, "name": name, "status": status},
            domain="shop.example.com",
            url="https://shop.example.com/",
        )
        for exp_id, name, status in specs
    ]


def finish(conn, dataset_id, items, trigger_type="manual"):
    """Run one version through to completed and return it."""
    version = create_running_version(conn, dataset_id, "Retail sites", trigger_type, "tests")
    previous = get_latest_completed(conn, dataset_id, before_version=version.version_number)
    changeset = diff(
        previous.experiments_snapshot.all_experiments if previous else [],
        items,
        first_version=previous is None,
    )
    complete_version(conn, version.id, snapshot_from_experiments(items), changeset, ProcessingStats())
    return get_version_by_id(conn, version.id)


class TestDatasets:
    """Tests for dataset operations."""

    def test_create_and_get(self, db_connection, dataset_id):
        dataset = get_dataset(db_connection, dataset_id)
        assert dataset is not None
        assert dataset.name == "Retail sites"
        assert dataset.urls == ["https://shop.example.com/", "https://news.example.org/"]
        assert dataset.change_detection_status == "not_started"
        assert dataset.change_detection_stats.total_versions == 0

    def test_generated_id(self, db_connection):
        dataset_id = create_dataset(db_connection, "Other", [])
        assert len(dataset_id) == 12
        assert [d.id for d in get_datasets(db_connection)] == [dataset_id]

    def test_require_missing(self, db_connection):
        with pytest.raises(DatasetNotFoundError):
            require_dataset(db_connection, "nope")

    def test_update_urls(self, db_connection, dataset_id):
        update_dataset_urls(db_connection, dataset_id, ["https://a.example.com/"])
        assert get_dataset(db_connection, dataset_id).urls == ["https://a.example.com/"]

    def test_update_urls_missing(self, db_connection):
        with pytest.raises(DatasetNotFoundError):
            update_dataset_urls(db_connection, "nope", [])

    def test_detection_lifecycle(self, db_connection, dataset_id):
        """pending, in_progress and completed update the status and counters."""
        set_dataset_pending(db_connection, dataset_id)
        assert get_dataset(db_connection, dataset_id).change_detection_status == "pending"

        start_dataset_detection(db_connection, dataset_id, "scheduled")
        dataset = get_dataset(db_connection, dataset_id)
        assert dataset.change_detection_status == "in_progress"
        assert dataset.change_detection_stats.cron_runs == 1

        complete_dataset_detection(db_connection, dataset_id, 1, 4, "3s")
        dataset = get_dataset(db_connection, dataset_id)
        assert dataset.change_detection_status == "completed"
        assert dataset.last_change_detection_run is not None
        stats = dataset.change_detection_stats
        assert stats.total_versions == 1
        assert stats.last_version_number == 1
        assert stats.total_changes_detected == 4
        assert stats.last_run_duration == "3s"

    def test_stale_pending(self, db_connection, dataset_id):
        set_dataset_pending(db_connection, dataset_id)
        assert get_stale_pending_datasets(db_connection, 900) == []
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        stale = get_stale_pending_datasets(db_connection, 900, now=later)
        assert [d.id for d in stale] == [dataset_id]


class TestVersions:
    """Tests for version lifecycle."""

    def test_first_version_is_one(self, db_connection, dataset_id):
        version = create_running_version(db_connection, dataset_id, "Retail sites")
        assert version.version_number == 1
        assert version.status == "running"
        assert version.trigger_type == "manual"
        assert version.start_time == version.run_timestamp

    def test_numbers_increase(self, db_connection, dataset_id):
        first = finish(db_connection, dataset_id, experiments(("1", "a", "Running")))
        second = finish(db_connection, dataset_id, experiments(("1", "a", "Running")))
        assert (first.version_number, second.version_number) == (1, 2)
        assert next_version_number(db_connection, dataset_id) == 3

    def test_failed_versions_consume_numbers(self, db_connection, dataset_id):
        version = create_running_version(db_connection, dataset_id, "Retail sites")
        fail_version(db_connection, version.id, "boom")
        second = create_running_version(db_connection, dataset_id, "Retail sites")
        assert second.version_number == 2

    def test_numbering_is_per_dataset(self, db_connection, dataset_id):
        other = create_dataset(db_connection, "Other", [])
        create_running_version(db_connection, dataset_id, "Retail sites")
        version = create_running_version(db_connection, other, "Other")
        assert version.version_number == 1

    def test_second_running_rejected(self, db_connection, dataset_id):
        create_running_version(db_connection, dataset_id, "Retail sites")
        with pytest.raises(DetectionAlreadyRunningError):
            create_running_version(db_connection, dataset_id, "Retail sites")

    def test_explicit_number_conflict(self, db_connection, dataset_id):
        version = create_running_version(db_connection, dataset_id, "Retail sites")
        fail_version(db_connection, version.id, "boom")
        with pytest.raises(VersionConflictError):
            create_running_version(db_connection, dataset_id, "Retail sites", version_number=1)

    def test_invalid_number_rejected(self, db_connection, dataset_id):
        with pytest.raises(ValueError):
            create_running_version(db_connection, dataset_id, "Retail sites", version_number=0)

    def test_unknown_trigger_rejected(self, db_connection, dataset_id):
        with pytest.raises(ValueError):
            create_running_version(db_connection, dataset_id, "Retail sites", trigger_type="webhook")

    def test_complete_stores_results(self, db_connection, dataset_id):
        version = finish(db_connection, dataset_id, experiments(("1", "a", "Running"), ("2", "b", "Paused")))
        assert version.status == "completed"
        assert version.end_time is not None
        assert version.duration_ms is not None
        assert version.total_changes == 2
        assert version.experiments_snapshot.total_experiments == 2
        assert version.experiments_snapshot.active_experiments == 1
        assert version.changes_since_last_version.summary.changes_by_type.NEW == 2

    def test_terminal_versions_immutable(self, db_connection, dataset_id):
        """Completed and failed versions reject further writes."""
        done = finish(db_connection, dataset_id, [])
        with pytest.raises(VersionStateError):
            fail_version(db_connection, done.id, "late")
        with pytest.raises(VersionStateError):
            complete_version(
                db_connection,
                done.id,
                snapshot_from_experiments([]),
                diff([], []),
                ProcessingStats(),
            )

        failed = create_running_version(db_connection, dataset_id, "Retail sites")
        fail_version(db_connection, failed.id, "boom")
        with pytest.raises(VersionStateError):
            fail_version(db_connection, failed.id, "again")
        assert get_version_by_id(db_connection, failed.id).error == "boom"

    def test_get_version_defaults_to_completed(self, db_connection, dataset_id):
        version = create_running_version(db_connection, dataset_id, "Retail sites")
        assert get_version(db_connection, dataset_id, 1) is None
        assert get_version(db_connection, dataset_id, 1, status=None).id == version.id

    def test_latest_completed_skips_failed(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, [])
        failed = create_running_version(db_connection, dataset_id, "Retail sites")
        fail_version(db_connection, failed.id, "boom")
        latest = get_latest_completed(db_connection, dataset_id)
        assert latest.version_number == 1
        assert get_latest_completed(db_connection, dataset_id, before_version=1) is None

    def test_fail_stale_versions(self, db_connection, dataset_id):
        version = create_running_version(db_connection, dataset_id, "Retail sites")
        assert fail_stale_versions(db_connection, 1800, "Timeout") == []
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        failed = fail_stale_versions(db_connection, 1800, "Timeout", now=later)
        assert [v.id for v in failed] == [version.id]
        record = get_version_by_id(db_connection, version.id)
        assert record.status == "failed"
        assert record.error == "Timeout"

    def test_is_stale(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert is_stale("2024-01-01T11:00:00Z", 1800, now=now) is True
        assert is_stale("2024-01-01T11:45:00Z", 1800, now=now) is False
        assert is_stale(None, 1800, now=now) is False


class TestHistory:
    """Tests for history, statistics and cleanup."""

    def test_pagination(self, db_connection, dataset_id):
        for _ in range(5):
            finish(db_connection, dataset_id, [])
        page = get_version_history(db_connection, dataset_id, page=1, limit=2)
        assert [v.version_number for v in page.versions] == [5, 4]
        assert page.pagination.total == 5
        assert page.pagination.pages == 3
        assert page.pagination.has_next is True
        assert page.pagination.has_prev is False
        assert page.versions[0].experiments_snapshot is None

        last = get_version_history(db_connection, dataset_id, page=3, limit=2)
        assert [v.version_number for v in last.versions] == [1]
        assert last.pagination.has_next is False
        assert last.pagination.has_prev is True

    def test_filters(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, [], trigger_type="manual")
        finish(db_connection, dataset_id, [], trigger_type="cron")
        failed = create_running_version(db_connection, dataset_id, "Retail sites")
        fail_version(db_connection, failed.id, "boom")

        cron = get_version_history(db_connection, dataset_id, trigger_type="scheduled")
        assert [v.version_number for v in cron.versions] == [2]
        failures = get_version_history(db_connection, dataset_id, status="failed")
        assert [v.version_number for v in failures.versions] == [3]
        future = get_version_history(db_connection, dataset_id, from_date="2999-01-01T00:00:00Z")
        assert future.pagination.total == 0
        assert future.pagination.pages == 0

    def test_completed_versions_oldest_first(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, [])
        finish(db_connection, dataset_id, experiments(("1", "a", "Running")))
        versions = get_completed_versions(db_connection, dataset_id, include_snapshot=True)
        assert [v.version_number for v in versions] == [1, 2]
        assert versions[1].experiments_snapshot.total_experiments == 1

    def test_statistics(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, experiments(("1", "a", "Running"), ("2", "b", "Running")))
        finish(db_connection, dataset_id, experiments(("1", "a", "Paused"), ("2", "b", "Running")), "cron")
        failed = create_running_version(db_connection, dataset_id, "Retail sites")
        fail_version(db_connection, failed.id, "boom")

        stats = get_version_statistics(db_connection, dataset_id)
        assert stats.total_versions == 2
        assert stats.total_changes == 3
        assert stats.avg_changes_per_version == 1.5
        assert stats.manual_runs == 1
        assert stats.cron_runs == 1
        assert stats.failed_runs == 1
        assert stats.last_version_number == 2

    def test_statistics_empty(self, db_connection, dataset_id):
        stats = get_version_statistics(db_connection, dataset_id)
        assert stats.total_versions == 0
        assert stats.avg_changes_per_version == 0.0
        assert stats.last_run is None

    def test_cleanup_keeps_newest(self, db_connection, dataset_id):
        for _ in range(5):
            finish(db_connection, dataset_id, [])
        deleted = cleanup_old_versions(db_connection, dataset_id, keep_versions=2)
        assert deleted == 3
        remaining = get_completed_versions(db_connection, dataset_id)
        assert [v.version_number for v in remaining] == [4, 5]
        # Numbers are never reused after cleanup
        assert next_version_number(db_connection, dataset_id) == 6

    def test_cleanup_spares_running(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, [])
        running = create_running_version(db_connection, dataset_id, "Retail sites")
        cleanup_old_versions(db_connection, dataset_id, keep_versions=1)
        assert get_version_by_id(db_connection, running.id).status == "running"


class TestSearch:
    """Tests for search_experiments()."""

    def test_search_by_name(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, experiments(("1", "Checkout button", "Running"), ("2", "Hero", "Paused")))
        hits = search_experiments(db_connection, dataset_id, "checkout")
        assert [h.experiment_id for h in hits] == ["1"]
        assert hits[0].version_number == 1

    def test_search_newest_first(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, experiments(("1", "Hero", "Running")))
        finish(db_connection, dataset_id, experiments(("1", "Hero", "Paused")))
        hits = search_experiments(db_connection, dataset_id, "hero")
        assert [h.version_number for h in hits] == [2, 1]
        assert hits[0].status == "Paused"

    def test_search_filters(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, experiments(("1", "Hero", "Running"), ("2", "Hero B", "Paused")))
        assert [h.experiment_id for h in search_experiments(db_connection, dataset_id, "hero", status="paused")] == ["2"]
        assert search_experiments(db_connection, dataset_id, "hero", domain="other.com") == []
        assert len(search_experiments(db_connection, dataset_id, "hero", limit=1)) == 1

    def test_invalid_regex_matched_literally(self, db_connection, dataset_id):
        finish(db_connection, dataset_id, experiments(("1", "Price (EU", "Running")))
        hits = search_experiments(db_connection, dataset_id, "(EU")
        assert len(hits) == 1


class TestJobs:
    """Tests for job queue operations."""

    def test_create_and_claim(self, db_connection):
        job_id = create_job(db_connection, "change-detection", {"dataset_id": "ds-1"})
        job = claim_job(db_connection, "worker-1")
        assert job is not None
        assert job.id == job_id
        assert job.status == "running"
        assert job.worker_id == "worker-1"
        assert job.payload == {"dataset_id": "ds-1"}
        assert claim_job(db_connection, "worker-2") is None

    def test_claim_fifo(self, db_connection):
        first = create_job(db_connection, "change-detection")
        second = create_job(db_connection, "change-detection")
        assert claim_job(db_connection, "w").id == first
        assert claim_job(db_connection, "w").id == second

    def test_claim_filters_types(self, db_connection):
        create_job(db_connection, "other")
        assert claim_job(db_connection, "w", ["change-detection"]) is None
        assert claim_job(db_connection, "w", []) is None
        assert claim_job(db_connection, "w", ["other"]) is not None

    def test_progress_and_complete(self, db_connection):
        job_id = create_job(db_connection, "change-detection")
        claim_job(db_connection, "w")
        update_job_progress(db_connection, job_id, 150, {"done": 1})
        job = get_job(db_connection, job_id)
        assert job.progress == 100.0
        assert job.partial_result == {"done": 1}

        complete_job(db_connection, job_id, {"version_number": 1})
        job = get_job(db_connection, job_id)
        assert job.status == "completed"
        assert job.result == {"version_number": 1}
        assert get_active_jobs(db_connection) == []

    def test_fail_stale_jobs(self, db_connection):
        job_id = create_job(db_connection, "change-detection")
        claim_job(db_connection, "w")
        assert fail_stale_jobs(db_connection, 60) == []
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        assert [j.id for j in fail_stale_jobs(db_connection, 60, now=later)] == [job_id]
        job = get_job(db_connection, job_id)
        assert job.status == "failed"
        assert job.error_message == "Job timed out"
