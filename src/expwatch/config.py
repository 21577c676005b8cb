# Copyright (c) Syntropy Systems
"""Configuration management for expwatch."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, cast

import yaml

PROJECT_DIR_NAME = ".expwatch"
SCRAPER_URL_ENV = "EXPWATCH_SCRAPER_URL"


@dataclass
class ExpwatchConfig:
    """Configuration for expwatch."""

    # Poll interval for worker threads when no jobs are queued (seconds)
    poll_interval: float = 2.0

    # Worker threads running detection jobs
    max_concurrent_jobs: int = 2

    # URLs scraped in parallel per batch, and the pause between batches
    scrape_concurrent: int = 2
    scrape_delay_ms: int = 1000

    # Per-URL request timeout against the scraping service (seconds)
    scrape_timeout: float = 60.0

    # Base URL of the scraping service
    scraper_url: Optional[str] = None

    # Datasets pending longer than this are restarted (seconds)
    pending_timeout: int = 900

    # Versions running longer than this are failed (seconds)
    running_timeout: int = 1800

    # Finished jobs older than this are purged by the sweep (seconds)
    job_retention: int = 3600

    # Scale scrape concurrency and delay down while several jobs run
    adaptive_scraping: bool = True

    # A changeset is significant when either threshold is exceeded
    significant_total_threshold: int = 10
    significant_domain_threshold: int = 5

    # Versions kept per dataset by cleanup
    keep_versions: int = 50

    # Cron expressions for the scheduler
    detection_schedule: str = "0 2 1 * *"
    sweep_schedule: str = "0 */4 * * *"
    schedule_timezone: str = "UTC"


_INT_KEYS = (
    "max_concurrent_jobs",
    "scrape_concurrent",
    "scrape_delay_ms",
    "pending_timeout",
    "running_timeout",
    "job_retention",
    "significant_total_threshold",
    "significant_domain_threshold",
    "keep_versions",
)
_FLOAT_KEYS = ("poll_interval", "scrape_timeout")
_STR_KEYS = ("scraper_url", "detection_schedule", "sweep_schedule", "schedule_timezone")
_BOOL_KEYS = ("adaptive_scraping",)


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .expwatch directory by walking up from start_path.

    Returns None if no .expwatch directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while True:
        candidate = current / PROJECT_DIR_NAME
        if candidate.is_dir():
            return candidate
        if current == current.parent:
            return None
        current = current.parent


def get_global_config_dir() -> Path:
    """Get the global expwatch config directory (~/.expwatch)."""
    return Path.home() / PROJECT_DIR_NAME


def load_config(project_dir: Path | None = None) -> ExpwatchConfig:
    """Load configuration from .expwatch/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .expwatch directory walking up
    3. ~/.expwatch/config.yaml
    4. Defaults

    EXPWATCH_SCRAPER_URL overrides scraper_url from any of these.
    """
    config = ExpwatchConfig()

    config_path = None

    if project_dir is not None:
        config_path = project_dir / "config.yaml"
    else:
        found_dir = find_project_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        for key in _INT_KEYS:
            value = data.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(config, key, int(value))
        for key in _FLOAT_KEYS:
            value = data.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(config, key, float(value))
        for key in _STR_KEYS:
            value = data.get(key)
            if isinstance(value, str) and value:
                setattr(config, key, value)
        for key in _BOOL_KEYS:
            value = data.get(key)
            if isinstance(value, bool):
                setattr(config, key, value)

    env_url = os.environ.get(SCRAPER_URL_ENV)
    if env_url:
        config.scraper_url = env_url

    return config


def get_db_path(project_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if project_dir is None:
        project_dir = require_project_dir()
    return project_dir / "expwatch.db"


def require_project_dir() -> Path:
    """Get the .expwatch directory or raise an error if not found."""
    project_dir = find_project_dir()
    if project_dir is None:
        msg = "No .expwatch directory found. Run 'expwatch init' first."
        raise RuntimeError(msg)
    return project_dir
