# Copyright (c) Syntropy Systems
"""Helpers shared by CLI commands."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from expwatch.config import ExpwatchConfig, get_db_path, load_config, require_project_dir
from expwatch.scraper import HttpScraperClient

console = Console()


def open_project() -> tuple[Path, ExpwatchConfig]:
    """Locate the project and return (db_path, config), exiting if there is none."""
    try:
        project_dir = require_project_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    return get_db_path(project_dir), load_config(project_dir)


def build_scraper(config: ExpwatchConfig) -> HttpScraperClient:
    """Client for the configured scraping service. Use it as a context manager."""
    if not config.scraper_url:
        console.print("[red]Error:[/red] No scraper_url configured.")
        console.print("Set scraper_url in .expwatch/config.yaml or EXPWATCH_SCRAPER_URL.")
        raise typer.Exit(1)
    return HttpScraperClient(config.scraper_url, timeout=config.scrape_timeout)


def status_style(status: str) -> str:
    return {
        "completed": "green",
        "running": "blue",
        "in_progress": "blue",
        "pending": "yellow",
        "queued": "yellow",
        "failed": "red",
    }.get(status, "dim")
