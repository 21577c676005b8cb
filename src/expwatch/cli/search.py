# Copyright (c) Syntropy Systems
"""expwatch search command."""

from __future__ import annotations

from contextlib import closing
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from expwatch.cli.common import open_project
from expwatch.db import get_connection, search_experiments

console = Console()


def search(
    dataset_id: str = typer.Argument(..., help="Dataset ID"),
    query: str = typer.Argument(..., help="Pattern matched against experiment name or ID"),
    domain: Optional[str] = typer.Option(None, "--domain", help="Only this domain"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Only this experiment status"),
    version: Optional[int] = typer.Option(None, "--version", help="Only this version"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Maximum results"),
) -> None:
    """Find experiments across stored snapshots."""
    db_path, _ = open_project()
    with closing(get_connection(db_path)) as conn:
        hits = search_experiments(
            conn, dataset_id, query, version_number=version, domain=domain, status=status, limit=limit
        )

    if not hits:
        console.print("[dim]No matching experiments[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Version", justify="right")
    table.add_column("Domain")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    for hit in hits:
        table.add_row(f"v{hit.version_number}", hit.domain, hit.experiment_id, hit.experiment_name, hit.status)
    console.print(table)
