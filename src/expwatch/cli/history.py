# Copyright (c) Syntropy Systems
"""expwatch history and show commands."""

from __future__ import annotations

from contextlib import closing
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from expwatch.cli.common import open_project, status_style
from expwatch.db import get_connection, get_dataset, get_version_history
from expwatch.errors import VersionNotFoundError
from expwatch.models.changes import Changeset
from expwatch.trends import format_duration, get_version_details

console = Console()


def history(
    dataset_id: str = typer.Argument(..., help="Dataset ID"),
    page: int = typer.Option(1, "--page", "-p", min=1, help="Page number"),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Versions per page"),
    trigger: Optional[str] = typer.Option(None, "--trigger", "-t", help="Filter by trigger type"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by version status"),
) -> None:
    """List a dataset's versions, newest first."""
    db_path, _ = open_project()
    with closing(get_connection(db_path)) as conn:
        if get_dataset(conn, dataset_id) is None:
            console.print(f"[red]Error:[/red] Dataset not found: {dataset_id}")
            raise typer.Exit(1)
        try:
            result = get_version_history(conn, dataset_id, page=page, limit=limit, trigger_type=trigger, status=status)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    if not result.versions:
        console.print("[dim]No versions[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Version", justify="right")
    table.add_column("Status")
    table.add_column("Trigger")
    table.add_column("Run at")
    table.add_column("Duration")
    table.add_column("Changes", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Removed", justify="right")
    table.add_column("Status chg", justify="right")
    table.add_column("Modified", justify="right")

    for version in result.versions:
        style = status_style(version.status)
        changes = version.changes_since_last_version
        counts = changes.summary.changes_by_type if changes else None
        table.add_row(
            f"v{version.version_number}",
            f"[{style}]{version.status}[/{style}]",
            version.trigger_type,
            version.run_timestamp,
            format_duration(version.duration_ms),
            str(version.total_changes) if version.status == "completed" else "-",
            str(counts.NEW) if counts else "-",
            str(counts.REMOVED) if counts else "-",
            str(counts.STATUS_CHANGED) if counts else "-",
            str(counts.MODIFIED) if counts else "-",
        )
    console.print(table)

    p = result.pagination
    console.print(f"[dim]Page {p.page} of {p.pages} ({p.total} versions)[/dim]")


def print_changes(changes: Changeset) -> None:
    details = changes.change_details
    for entry in details.new_experiments:
        console.print(f"  [green]+ NEW[/green]      {entry.domain} {entry.experiment_id} {entry.experiment_name} [dim]({entry.status})[/dim]")
    for entry in details.removed_experiments:
        console.print(f"  [red]- REMOVED[/red]  {entry.domain} {entry.experiment_id} {entry.experiment_name}")
    for entry in details.status_changes:
        console.print(
            f"  [yellow]~ STATUS[/yellow]   {entry.domain} {entry.experiment_id} {entry.experiment_name} "
            f"[dim]{entry.previous_status} -> {entry.new_status}[/dim]"
        )
    for entry in details.modified_experiments:
        console.print(
            f"  [blue]* MODIFIED[/blue] {entry.domain} {entry.experiment_id} {entry.experiment_name} "
            f"[dim]({', '.join(entry.modified_fields)})[/dim]"
        )


def show(
    dataset_id: str = typer.Argument(..., help="Dataset ID"),
    version_number: int = typer.Argument(..., help="Version number"),
    changes: bool = typer.Option(True, "--changes/--no-changes", help="List individual changes"),
) -> None:
    """Show one version with its change summary."""
    db_path, _ = open_project()
    with closing(get_connection(db_path)) as conn:
        try:
            details = get_version_details(conn, dataset_id, version_number)
        except VersionNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    version = details.version
    style = status_style(version.status)
    console.print(f"\n[bold]{version.dataset_name or dataset_id} v{version.version_number}[/bold]\n")
    console.print(f"  [dim]Status:[/dim]     [{style}]{version.status}[/{style}]")
    if version.error:
        console.print(f"  [dim]Error:[/dim]      [red]{version.error}[/red]")
    console.print(f"  [dim]Trigger:[/dim]    {version.trigger_type} by {version.triggered_by or '-'}")
    console.print(f"  [dim]Run at:[/dim]     {version.run_timestamp}")
    console.print(f"  [dim]Duration:[/dim]   {details.formatted_duration}")

    snapshot = version.experiments_snapshot
    if snapshot is not None:
        console.print(
            f"  [dim]Snapshot:[/dim]   {snapshot.total_experiments} experiments "
            f"({snapshot.active_experiments} active) on {snapshot.total_domains} domains"
        )
    stats = version.processing_stats
    if stats is not None:
        console.print(
            f"  [dim]Scans:[/dim]      {stats.successful_scans} ok, {stats.failed_scans} failed "
            f"of {stats.total_urls_processed}"
        )
    console.print(f"  [dim]Changes:[/dim]    {details.change_summary} [dim]({details.change_significance})[/dim]")

    if changes and version.changes_since_last_version is not None:
        console.print()
        print_changes(version.changes_since_last_version)
