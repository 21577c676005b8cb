# Copyright (c) Syntropy Systems
"""Client for the scraping service that extracts Optimizely experiments."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Optional, Protocol

import httpx
from pydantic import AliasChoices, Field, ValidationError
from typing_extensions import Self

from expwatch.models.base import ExpwatchBaseModel, JSONValue
from expwatch.models.scrape import (
    ScrapeFailure,
    ScrapeResult,
    ScrapeSuccess,
    extract_domain,
)

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

# (completed, total)
ScrapeProgress = Callable[[int, int], None]


class ScraperClient(Protocol):
    def scrape_one(self, url: str) -> ScrapeResult:
        ...

    def batch_scrape(
        self,
        urls: Sequence[str],
        concurrent: int = 2,
        delay_ms: int = 1000,
        progress: Optional[ScrapeProgress] = None,
    ) -> list[ScrapeResult]:
        ...


def batch_scrape(
    scrape_one: Callable[[str], ScrapeResult],
    urls: Sequence[str],
    concurrent: int = 2,
    delay_ms: int = 1000,
    progress: Optional[ScrapeProgress] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[ScrapeResult]:
    """Scrape urls in batches of `concurrent`, pausing delay_ms between batches.

    Results keep the order of urls. A scrape that raises is recorded as a
    ScrapeFailure for its URL.
    """
    concurrent = max(1, concurrent)

    def guarded(url: str) -> ScrapeResult:
        try:
            return scrape_one(url)
        except Exception as e:
            logger.warning("Scrape failed for %s: %s", url, e)
            return ScrapeFailure.for_url(url, str(e) or type(e).__name__)

    results: list[ScrapeResult] = []
    total = len(urls)
    with ThreadPoolExecutor(max_workers=concurrent) as pool:
        for start in range(0, total, concurrent):
            batch = urls[start : start + concurrent]
            results.extend(pool.map(guarded, batch))
            if progress is not None:
                progress(len(results), total)
            if start + concurrent < total and delay_ms > 0:
                sleep(delay_ms / 1000)
    return results


class ScrapeServiceResponse(ExpwatchBaseModel):
    """Body returned by the scraping service for one URL."""

    success: bool = True
    has_optimizely: bool = Field(
        default=False, validation_alias=AliasChoices("has_optimizely", "hasOptimizely")
    )
    experiments: list[JSONValue] = Field(default_factory=list)
    cookie_type: str = Field(default="unknown", validation_alias=AliasChoices("cookie_type", "cookieType"))
    error: Optional[str] = None


class HttpScraperClient:
    """Scraper backed by the HTTP scraping service.

    POSTs {"url": ...} to {base_url}/scrape and expects a
    ScrapeServiceResponse body. Retries are the service's concern.
    """

    base_url: str
    timeout: float

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def scrape_one(self, url: str) -> ScrapeResult:
        domain = extract_domain(url)
        try:
            response = self._client.post(f"{self.base_url}/scrape", json={"url": url})
            _ = response.raise_for_status()
            body = ScrapeServiceResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            return ScrapeFailure(url=url, domain=domain, error=f"Scraper error: HTTP {e.response.status_code}")
        except httpx.RequestError as e:
            return ScrapeFailure(url=url, domain=domain, error=f"Connection error: {e}")
        except (ValidationError, ValueError) as e:
            return ScrapeFailure(url=url, domain=domain, error=f"Invalid scraper response: {e}")

        if not body.success:
            return ScrapeFailure(url=url, domain=domain, error=body.error or "Scrape failed")
        return ScrapeSuccess(
            url=url,
            domain=domain,
            has_optimizely=body.has_optimizely,
            experiments=body.experiments,
            cookie_type=body.cookie_type,
        )

    def batch_scrape(
        self,
        urls: Sequence[str],
        concurrent: int = 2,
        delay_ms: int = 1000,
        progress: Optional[ScrapeProgress] = None,
    ) -> list[ScrapeResult]:
        return batch_scrape(self.scrape_one, urls, concurrent, delay_ms, progress)
