# Copyright (c) Syntropy Systems
"""Compare command - diff two versions of a dataset."""

from __future__ import annotations

from contextlib import closing

import typer
from rich.console import Console
from rich.table import Table

from expwatch.cli.common import open_project
from expwatch.cli.history import print_changes
from expwatch.db import get_connection
from expwatch.detection.differ import SignificanceThresholds
from expwatch.errors import VersionNotFoundError
from expwatch.trends import change_summary_text, compare_versions, format_duration

console = Console()


def compare(
    dataset_id: str = typer.Argument(..., help="Dataset ID"),
    version_a: int = typer.Argument(..., help="First version number"),
    version_b: int = typer.Argument(..., help="Second version number"),
    details: bool = typer.Option(False, "--details", "-d", help="List individual changes"),
) -> None:
    """Compare two completed versions of a dataset.

    Example:
        expwatch compare abc123 3 7

    """
    db_path, config = open_project()
    thresholds = SignificanceThresholds(
        total_changes=config.significant_total_threshold,
        affected_domains=config.significant_domain_threshold,
    )
    with closing(get_connection(db_path)) as conn:
        try:
            comparison = compare_versions(conn, dataset_id, version_a, version_b, thresholds)
        except VersionNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    older = comparison.from_version
    newer = comparison.to_version
    console.print(f"\n[bold]Comparing v{older.version_number} and v{newer.version_number}[/bold]\n")

    table = Table(show_header=True, header_style="bold")
    table.add_column("", style="dim")
    table.add_column(f"v{older.version_number}", style="cyan")
    table.add_column(f"v{newer.version_number}", style="cyan")
    table.add_column("Delta", justify="right")
    table.add_row("Run at", older.run_timestamp, newer.run_timestamp, format_duration(comparison.summary.time_between_versions_ms))
    table.add_row(
        "Experiments",
        str(older.total_experiments),
        str(newer.total_experiments),
        f"{comparison.summary.experiments_change:+d}",
    )
    table.add_row(
        "Domains",
        str(older.total_domains),
        str(newer.total_domains),
        f"{comparison.summary.domains_change:+d}",
    )
    console.print(table)

    console.print(f"\n[bold]Changes:[/bold] {change_summary_text(comparison.changes)}")
    if comparison.changes.summary.significant_changes:
        console.print("[yellow]Significant changes[/yellow]")
    if comparison.domain_changes.new_domains:
        console.print(f"[green]New domains:[/green] {', '.join(comparison.domain_changes.new_domains)}")
    if comparison.domain_changes.removed_domains:
        console.print(f"[red]Removed domains:[/red] {', '.join(comparison.domain_changes.removed_domains)}")

    if details:
        console.print()
        print_changes(comparison.changes)
