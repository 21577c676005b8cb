# Copyright (c) Syntropy Systems
"""Pytest fixtures for expwatch tests."""

from __future__ import annotations

import os
import sqlite3
import tempfile
from collections.abc import Generator, Sequence
from pathlib import Path
from typing import Optional, Union

import pytest

from expwatch.models.scrape import ScrapeFailure, ScrapeResult, ScrapeSuccess, extract_domain
from expwatch.scraper import ScrapeProgress, batch_scrape

# Store original cwd at module load time
_original_cwd = Path.cwd()


def make_experiment(
    exp_id: str,
    name: Optional[str] = None,
    status: str = "Running",
    variations: Optional[list[dict]] = None,
    audience_ids: Optional[list[str]] = None,
    metrics: Optional[list] = None,
) -> dict:
    """Raw experiment record as the scraping service returns it."""
    return {
        "id": exp_id,
        "name": name if name is not None else f"Experiment {exp_id}",
        "status": status,
        "variations": variations
        if variations is not None
        else [
            {"id": f"{exp_id}-a", "name": "Control", "weight": 5000},
            {"id": f"{exp_id}-b", "name": "Variant", "weight": 5000},
        ],
        "audience_ids": audience_ids if audience_ids is not None else ["aud-1"],
        "metrics": metrics if metrics is not None else [{"id": "m-1", "name": "Clicks"}],
    }


class FakeScraper:
    """In-memory scraper: maps each URL to experiments, an error string or an exception."""

    def __init__(self) -> None:
        self.pages: dict[str, Union[list[dict], str, Exception]] = {}
        self.calls: list[str] = []
        self.batches: list[tuple[int, int]] = []
        self.closed = False

    def set(self, url: str, result: Union[list[dict], str, Exception]) -> None:
        self.pages[url] = result

    def scrape_one(self, url: str) -> ScrapeResult:
        self.calls.append(url)
        result = self.pages.get(url, [])
        if isinstance(result, Exception):
            raise result
        if isinstance(result, str):
            return ScrapeFailure.for_url(url, result)
        return ScrapeSuccess(
            url=url,
            domain=extract_domain(url),
            has_optimizely=bool(result),
            experiments=result,
        )

    def batch_scrape(
        self,
        urls: Sequence[str],
        concurrent: int = 2,
        delay_ms: int = 1000,
        progress: Optional[ScrapeProgress] = None,
    ) -> list[ScrapeResult]:
        self.batches.append((concurrent, delay_ms))
        return batch_scrape(self.scrape_one, urls, concurrent, 0, progress)

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> FakeScraper:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def expwatch_project(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Create a temporary expwatch project directory."""
    from expwatch.db import init_db

    monkeypatch.delenv("EXPWATCH_SCRAPER_URL", raising=False)
    project_dir = temp_dir / ".expwatch"
    project_dir.mkdir()

    # Initialize database
    init_db(project_dir / "expwatch.db")

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_path(expwatch_project: Path) -> Path:
    return expwatch_project / ".expwatch" / "expwatch.db"


@pytest.fixture
def db_connection(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from expwatch.db import get_connection

    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def fake_scraper() -> FakeScraper:
    return FakeScraper()


@pytest.fixture
def dataset_id(db_connection: sqlite3.Connection) -> str:
    """A dataset with two URLs on different domains."""
    from expwatch.db import create_dataset

    return create_dataset(
        db_connection,
        "Retail sites",
        ["https://shop.example.com/", "https://news.example.org/"],
        dataset_id="ds-1",
    )
