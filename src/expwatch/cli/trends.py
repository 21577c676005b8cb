# Copyright (c) Syntropy Systems
"""expwatch trends command."""

from __future__ import annotations

from contextlib import closing

import typer
from rich.console import Console
from rich.table import Table

from expwatch.cli.common import open_project
from expwatch.db import get_connection
from expwatch.trends import TIME_RANGES, get_trends

console = Console()


def trends(
    dataset_id: str = typer.Argument(..., help="Dataset ID"),
    time_range: str = typer.Option(
        "6months",
        "--range",
        "-r",
        help=f"Time range: {', '.join(TIME_RANGES)}",
    ),
) -> None:
    """Show change counts per version over a time range."""
    if time_range not in TIME_RANGES:
        console.print(f"[red]Error:[/red] Unknown time range '{time_range}'. Choose from: {', '.join(TIME_RANGES)}")
        raise typer.Exit(1)

    db_path, _ = open_project()
    with closing(get_connection(db_path)) as conn:
        report = get_trends(conn, dataset_id, time_range)

    if not report.trends:
        console.print(f"[dim]No completed versions in the last {time_range}[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Version", justify="right")
    table.add_column("Date")
    table.add_column("Trigger")
    table.add_column("Experiments", justify="right")
    table.add_column("Domains", justify="right")
    table.add_column("Changes", justify="right")
    table.add_column("N/R/S/M", justify="right")
    for point in report.trends:
        counts = point.changes_by_type
        changes = str(point.total_changes)
        if point.significant_changes:
            changes = f"[yellow]{changes}[/yellow]"
        table.add_row(
            f"v{point.version_number}",
            point.date,
            point.trigger_type,
            str(point.total_experiments),
            str(point.total_domains),
            changes,
            f"{counts.NEW}/{counts.REMOVED}/{counts.STATUS_CHANGED}/{counts.MODIFIED}",
        )
    console.print(table)

    stats = report.statistics
    console.print(f"\n  [dim]Avg changes per run:[/dim] {stats.avg_changes_per_run}")
    console.print(f"  [dim]Most active month:[/dim]   {stats.most_active_month or '-'}")
    console.print(f"  [dim]Experiment growth:[/dim]   {stats.growth_rate:+.2f}%")
