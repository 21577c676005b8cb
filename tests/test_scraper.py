# Copyright (c) Syntropy Systems
"""Tests for the scraping service client."""

import json

import httpx

from expwatch.models.scrape import ScrapeFailure, ScrapeSuccess, extract_domain
from expwatch.scraper import HttpScraperClient, batch_scrape
from expwatch.snapshot import build_snapshot


def client_for(handler):
    return HttpScraperClient("http://scraper.local/", transport=httpx.MockTransport(handler))


class TestExtractDomain:
    def test_hostname(self):
        assert extract_domain("https://Shop.Example.com/path?q=1") == "shop.example.com"

    def test_scheme_less(self):
        assert extract_domain("shop.example.com/path") == "shop.example.com"

    def test_unparseable(self):
        assert extract_domain("") == "unknown-domain"


class TestHttpScraperClient:
    """Tests for HttpScraperClient against a mock transport."""

    def test_success(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "hasOptimizely": True,
                    "cookieType": "optimizelyEndUserId",
                    "experiments": [{"id": "1", "name": "Hero"}],
                },
            )

        with client_for(handler) as client:
            result = client.scrape_one("https://shop.example.com/")

        assert seen == [("/scrape", {"url": "https://shop.example.com/"})]
        assert isinstance(result, ScrapeSuccess)
        assert result.domain == "shop.example.com"
        assert result.has_optimizely is True
        assert result.cookie_type == "optimizelyEndUserId"
        assert result.experiments == [{"id": "1", "name": "Hero"}]

    def test_malformed_experiment_entries_kept(self):
        def handler(request):
            return httpx.Response(
                200,
                json={"success": True, "experiments": [{"id": "1", "name": "Hero"}, None, "junk", 7]},
            )

        with client_for(handler) as client:
            result = client.scrape_one("https://shop.example.com/")

        assert isinstance(result, ScrapeSuccess)
        assert result.experiments == [{"id": "1", "name": "Hero"}, None, "junk", 7]

        snapshot, stats = build_snapshot([result])
        assert stats.successful_scans == 1
        hero = [e for e in snapshot.all_experiments if e.id == "1"]
        assert len(hero) == 1
        assert hero[0].name == "Hero"

    def test_service_reports_failure(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error": "Page blocked"})

        with client_for(handler) as client:
            result = client.scrape_one("https://shop.example.com/")
        assert isinstance(result, ScrapeFailure)
        assert result.error == "Page blocked"

    def test_http_error(self):
        def handler(request):
            return httpx.Response(503)

        with client_for(handler) as client:
            result = client.scrape_one("https://shop.example.com/")
        assert isinstance(result, ScrapeFailure)
        assert result.error == "Scraper error: HTTP 503"

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with client_for(handler) as client:
            result = client.scrape_one("https://shop.example.com/")
        assert isinstance(result, ScrapeFailure)
        assert result.error.startswith("Connection error")

    def test_invalid_body(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>")

        with client_for(handler) as client:
            result = client.scrape_one("https://shop.example.com/")
        assert isinstance(result, ScrapeFailure)
        assert result.error.startswith("Invalid scraper response")

    def test_batch(self):
        def handler(request):
            url = json.loads(request.content)["url"]
            if "down" in url:
                return httpx.Response(500)
            return httpx.Response(200, json={"experiments": []})

        urls = ["https://a.example.com/", "https://down.example.com/", "https://c.example.com/"]
        with client_for(handler) as client:
            results = client.batch_scrape(urls, concurrent=2, delay_ms=0)

        assert [r.url for r in results] == urls
        assert [r.success for r in results] == [True, False, True]


class TestBatchScrape:
    """Tests for batch_scrape()."""

    def test_order_progress_and_delay(self):
        sleeps = []
        progress = []
        urls = [f"https://site{i}.com/" for i in range(5)]

        def scrape_one(url):
            return ScrapeSuccess(url=url, domain=extract_domain(url))

        results = batch_scrape(
            scrape_one,
            urls,
            concurrent=2,
            delay_ms=250,
            progress=lambda done, total: progress.append((done, total)),
            sleep=sleeps.append,
        )

        assert [r.url for r in results] == urls
        assert progress == [(2, 5), (4, 5), (5, 5)]
        assert sleeps == [0.25, 0.25]

    def test_exceptions_become_failures(self):
        def scrape_one(url):
            raise TimeoutError("timed out")

        results = batch_scrape(scrape_one, ["https://a.com/"], sleep=lambda s: None)
        assert isinstance(results[0], ScrapeFailure)
        assert results[0].error == "timed out"
        assert results[0].domain == "a.com"

    def test_empty(self):
        assert batch_scrape(lambda url: None, []) == []
