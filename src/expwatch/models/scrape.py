# Copyright (c) Syntropy Systems
"""Results returned by the scraping collaborator."""

from __future__ import annotations

from typing import Literal, Union
from urllib.parse import urlparse

from pydantic import Field
from typing_extensions import TypeAlias

from .base import ExpwatchBaseModel, JSONValue

UNKNOWN_DOMAIN = "unknown-domain"


def extract_domain(url: str) -> str:
    """Hostname of a URL, tolerating scheme-less input."""
    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        host = urlparse(candidate).hostname
    except ValueError:
        host = None
    return host or UNKNOWN_DOMAIN


class ScrapeSuccess(ExpwatchBaseModel):
    success: Literal[True] = True
    url: str
    domain: str
    has_optimizely: bool = False
    experiments: list[JSONValue] = Field(default_factory=list)
    cookie_type: str = "unknown"


class ScrapeFailure(ExpwatchBaseModel):
    success: Literal[False] = False
    url: str
    domain: str
    error: str

    @classmethod
    def for_url(cls, url: str, error: str) -> ScrapeFailure:
        return cls(url=url, domain=extract_domain(url), error=error)


ScrapeResult: TypeAlias = Union[ScrapeSuccess, ScrapeFailure]
