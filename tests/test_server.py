# Copyright (c) Syntropy Systems
"""Tests for the expwatch HTTP API."""

import pytest
from fastapi.testclient import TestClient

from conftest import make_experiment
from expwatch.db import create_running_version, get_connection
from expwatch.server import create_app

SHOP = "https://shop.example.com/"
NEWS = "https://news.example.org/"


@pytest.fixture
def app(db_path, fake_scraper):
    return create_app(db_path, scraper=fake_scraper, start_background=False)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def dataset(client):
    response = client.post("/api/v1/datasets", json={"name": "Retail", "urls": [SHOP, NEWS], "id": "retail"})
    assert response.status_code == 201
    return response.json()["id"]


def run_detection(client, app, dataset_id):
    response = client.post(f"/api/v1/datasets/{dataset_id}/detect")
    assert response.status_code == 202
    app.state.queue.run_pending()
    return response.json()["job_id"]


class TestDatasetEndpoints:
    """Tests for dataset endpoints."""

    def test_create_and_get(self, client, dataset):
        response = client.get(f"/api/v1/datasets/{dataset}")
        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "Retail"
        assert body["urls"] == [SHOP, NEWS]
        assert body["change_detection_status"] == "not_started"

    def test_list(self, client, dataset):
        response = client.get("/api/v1/datasets")
        assert [d["id"] for d in response.json()["datasets"]] == [dataset]

    def test_duplicate(self, client, dataset):
        response = client.post("/api/v1/datasets", json={"name": "Again", "id": dataset})
        assert response.status_code == 409

    def test_missing(self, client):
        response = client.get("/api/v1/datasets/nope")
        assert response.status_code == 404
        assert response.json()["detail"] == "Dataset not found: nope"


class TestDetectionEndpoints:
    """Tests for detection, jobs and status."""

    def test_detect_and_poll_job(self, client, app, fake_scraper, dataset):
        fake_scraper.set(SHOP, [make_experiment("1"), make_experiment("2")])

        job_id = run_detection(client, app, dataset)

        job = client.get(f"/api/v1/jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["result"]["version_number"] == 1
        assert job["result"]["changes_by_type"]["NEW"] == 2

        status = client.get(f"/api/v1/datasets/{dataset}/status").json()
        assert status["change_detection_status"] == "completed"
        assert status["latest_version"] == 1

    def test_detect_conflict_while_pending(self, client, dataset):
        assert client.post(f"/api/v1/datasets/{dataset}/detect").status_code == 202
        response = client.post(f"/api/v1/datasets/{dataset}/detect")
        assert response.status_code == 409

    def test_detect_conflict_while_running(self, client, db_path, dataset):
        conn = get_connection(db_path)
        try:
            create_running_version(conn, dataset, "Retail")
        finally:
            conn.close()
        assert client.post(f"/api/v1/datasets/{dataset}/detect").status_code == 409

    def test_detect_bad_trigger(self, client, dataset):
        response = client.post(f"/api/v1/datasets/{dataset}/detect", json={"trigger_type": "webhook"})
        assert response.status_code == 400

    def test_detect_missing_dataset(self, client):
        assert client.post("/api/v1/datasets/nope/detect").status_code == 404

    def test_detect_all(self, client, app, dataset):
        response = client.post("/api/v1/detect/all", json={"trigger_type": "cron", "triggered_by": "tests"})
        assert response.status_code == 202
        assert response.json()["started"] == 1
        assert app.state.queue.run_pending() == 1

        versions = client.get(f"/api/v1/datasets/{dataset}/versions").json()["versions"]
        assert versions[0]["trigger_type"] == "cron"
        assert versions[0]["triggered_by"] == "tests"

    def test_job_missing(self, client):
        assert client.get("/api/v1/jobs/999").status_code == 404

    def test_recovery_sweep(self, client):
        response = client.post("/api/v1/recovery/sweep")
        assert response.status_code == 200
        assert response.json() == {
            "restarted_datasets": [],
            "timed_out_versions": [],
            "failed_jobs": [],
            "purged_jobs": 0,
        }

    def test_queue_stats(self, client, app, fake_scraper, dataset):
        fake_scraper.set(SHOP, [make_experiment("1")])
        run_detection(client, app, dataset)
        client.post("/api/v1/datasets/retail/detect")

        stats = client.get("/api/v1/jobs").json()

        assert stats["total"] == 2
        assert stats["completed"] == 1
        assert stats["queued"] == 1
        assert stats["running"] == 0
        assert stats["max_concurrent_jobs"] == 2
        assert stats["scrape_options"] == {"concurrent": 2, "delay_ms": 1000, "load_level": "single"}


class TestVersionEndpoints:
    """Tests for version history and reports."""

    @pytest.fixture
    def two_versions(self, client, app, fake_scraper, dataset):
        fake_scraper.set(SHOP, [make_experiment("1", name="Checkout")])
        run_detection(client, app, dataset)
        fake_scraper.set(SHOP, [make_experiment("1", name="Checkout", status="Paused")])
        fake_scraper.set(NEWS, [make_experiment("7", name="Banner")])
        run_detection(client, app, dataset)
        return dataset

    def test_history(self, client, two_versions):
        body = client.get(f"/api/v1/datasets/{two_versions}/versions", params={"limit": 1}).json()
        assert [v["version_number"] for v in body["versions"]] == [2]
        assert body["versions"][0]["experiments_snapshot"] is None
        assert body["pagination"] == {
            "page": 1,
            "limit": 1,
            "total": 2,
            "pages": 2,
            "has_next": True,
            "has_prev": False,
        }

    def test_latest(self, client, two_versions):
        body = client.get(f"/api/v1/datasets/{two_versions}/versions/latest").json()
        assert body["version_number"] == 2
        assert body["change_summary"] == "1 new, 1 status change"

    def test_latest_without_versions(self, client, dataset):
        assert client.get(f"/api/v1/datasets/{dataset}/versions/latest").status_code == 404

    def test_version_details(self, client, two_versions):
        body = client.get(f"/api/v1/datasets/{two_versions}/versions/2").json()
        assert body["version"]["status"] == "completed"
        assert body["version"]["experiments_snapshot"]["total_experiments"] == 2
        assert body["change_significance"] == "low"

    def test_version_missing(self, client, two_versions):
        response = client.get(f"/api/v1/datasets/{two_versions}/versions/9")
        assert response.status_code == 404

    def test_compare(self, client, two_versions):
        body = client.get(f"/api/v1/datasets/{two_versions}/compare", params={"v1": 2, "v2": 1}).json()
        assert body["from_version"]["version_number"] == 1
        assert body["domain_changes"]["new_domains"] == ["news.example.org"]
        assert body["changes"]["summary"]["changes_by_type"]["STATUS_CHANGED"] == 1

    def test_trends(self, client, two_versions):
        body = client.get(f"/api/v1/datasets/{two_versions}/trends", params={"time_range": "1month"}).json()
        assert [p["version_number"] for p in body["trends"]] == [1, 2]

    def test_trends_bad_range(self, client, two_versions):
        response = client.get(f"/api/v1/datasets/{two_versions}/trends", params={"time_range": "2weeks"})
        assert response.status_code == 400

    def test_statistics(self, client, two_versions):
        body = client.get(f"/api/v1/datasets/{two_versions}/statistics").json()
        assert body["versions"]["total_versions"] == 2
        assert body["detection"]["manual_runs"] == 2

    def test_search(self, client, two_versions):
        hits = client.get(f"/api/v1/datasets/{two_versions}/search", params={"q": "banner"}).json()
        assert [(h["version_number"], h["experiment_id"]) for h in hits] == [(2, "7")]

    def test_cleanup(self, client, two_versions):
        response = client.delete(f"/api/v1/datasets/{two_versions}/versions", params={"keep": 1})
        assert response.json()["message"] == "Deleted 1 old version(s)"
        body = client.get(f"/api/v1/datasets/{two_versions}/versions").json()
        assert body["pagination"]["total"] == 1


class TestSchedulerEndpoints:
    """Tests for scheduler control."""

    def test_status(self, client):
        body = client.get("/api/v1/scheduler").json()
        assert body["running"] is False
        names = sorted(t["name"] for t in body["tasks"])
        assert names == ["change_detection", "recovery_sweep"]

    def test_start_stop(self, client):
        assert client.post("/api/v1/scheduler/start").json()["running"] is True
        assert client.post("/api/v1/scheduler/stop").json()["running"] is False

    def test_trigger(self, client, app, dataset):
        response = client.post("/api/v1/scheduler/trigger")
        assert response.json()["message"] == "Triggered change_detection"
        assert app.state.queue.run_pending() == 1

    def test_trigger_unknown(self, client):
        response = client.post("/api/v1/scheduler/trigger", json={"task": "nope"})
        assert response.status_code == 404

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
