# Copyright (c) Syntropy Systems
"""expwatch init command."""

from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console

from expwatch.config import PROJECT_DIR_NAME, ExpwatchConfig
from expwatch.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
    scraper_url: Optional[str] = typer.Option(
        None,
        "--scraper-url",
        help="Base URL of the scraping service",
    ),
) -> None:
    """Initialize a new expwatch project.

    Creates a .expwatch directory with configuration and database.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR_NAME

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    project_dir.mkdir(parents=True)

    config = {k: v for k, v in asdict(ExpwatchConfig()).items() if v is not None}
    if scraper_url:
        config["scraper_url"] = scraper_url

    config_path = project_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    db_path = project_dir / "expwatch.db"
    init_db(db_path)

    console.print(f"[green]Initialized expwatch project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
