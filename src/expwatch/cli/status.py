# Copyright (c) Syntropy Systems
"""expwatch status command."""

from __future__ import annotations

from contextlib import closing
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from expwatch.cli.common import open_project, status_style
from expwatch.db import get_active_jobs, get_connection, get_datasets, get_job, get_running_versions
from expwatch.errors import DatasetNotFoundError
from expwatch.models.db import JobRecord
from expwatch.orchestrator import get_detection_status
from expwatch.trends import get_dataset_statistics

console = Console()


def status(
    dataset_id: Optional[str] = typer.Argument(None, help="Dataset ID to show details for"),
    job_id: Optional[int] = typer.Option(None, "--job", "-j", help="Show one job"),
) -> None:
    """
    Show detection status.

    Without arguments, shows every dataset and the active jobs.
    With a dataset ID, shows its detection status and statistics.
    """
    db_path, _ = open_project()

    if job_id is not None:
        with closing(get_connection(db_path)) as conn:
            job = get_job(conn, job_id)
        if job is None:
            console.print(f"[red]Error:[/red] Job #{job_id} not found")
            raise typer.Exit(1)
        _show_job(job)
        return

    if dataset_id is not None:
        with closing(get_connection(db_path)) as conn:
            try:
                detection = get_detection_status(conn, dataset_id)
            except DatasetNotFoundError as e:
                console.print(f"[red]Error:[/red] {e}")
                raise typer.Exit(1)
            statistics = get_dataset_statistics(conn, dataset_id)

        style = status_style(detection.change_detection_status)
        console.print(f"\n[bold]{detection.dataset_name}[/bold] [dim]({detection.dataset_id})[/dim]\n")
        console.print(f"  [dim]Status:[/dim]          [{style}]{detection.change_detection_status}[/{style}]")
        if detection.change_detection_error:
            console.print(f"  [dim]Error:[/dim]           [red]{detection.change_detection_error}[/red]")
        if detection.running_version is not None:
            console.print(f"  [dim]Running:[/dim]         v{detection.running_version}")
        console.print(
            f"  [dim]Latest version:[/dim]  "
            + (f"v{detection.latest_version} at {detection.latest_version_timestamp}" if detection.latest_version else "-")
        )
        versions = statistics.versions
        console.print(f"  [dim]Versions:[/dim]        {versions.total_versions} completed, {versions.failed_runs} failed")
        console.print(f"  [dim]Changes:[/dim]         {versions.total_changes} ({versions.avg_changes_per_version} per version)")
        console.print(f"  [dim]Runs:[/dim]            {versions.manual_runs} manual, {versions.cron_runs} cron")
        console.print(f"  [dim]Avg duration:[/dim]    {statistics.avg_duration}")
        return

    with closing(get_connection(db_path)) as conn:
        datasets = get_datasets(conn)
        running = {v.dataset_id: v for v in get_running_versions(conn)}
        jobs = get_active_jobs(conn)

    if not datasets:
        console.print("[dim]No datasets[/dim]")
    else:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Dataset", style="dim")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Running")
        table.add_column("Last run")
        table.add_column("Last duration")
        for dataset in datasets:
            style = status_style(dataset.change_detection_status)
            version = running.get(dataset.id)
            table.add_row(
                dataset.id,
                dataset.name,
                f"[{style}]{dataset.change_detection_status}[/{style}]",
                f"v{version.version_number}" if version else "-",
                dataset.last_change_detection_run or "-",
                dataset.change_detection_stats.last_run_duration or "-",
            )
        console.print(table)

    if jobs:
        console.print(f"\n[bold]Active jobs[/bold] ({len(jobs)})")
        for job in jobs:
            style = status_style(job.status)
            console.print(
                f"  #{job.id} {job.job_type} [{style}]{job.status}[/{style}] "
                f"{job.progress:.0f}% [dim]{job.payload.get('dataset_id', '')}[/dim]"
            )


def _show_job(job: JobRecord) -> None:
    style = status_style(job.status)
    console.print(f"\n[bold]Job #{job.id}[/bold] {job.job_type}\n")
    console.print(f"  [dim]Status:[/dim]    [{style}]{job.status}[/{style}]")
    console.print(f"  [dim]Progress:[/dim]  {job.progress:.0f}%")
    console.print(f"  [dim]Payload:[/dim]   {job.payload}")
    console.print(f"  [dim]Created:[/dim]   {job.created_at or '-'}")
    console.print(f"  [dim]Started:[/dim]   {job.started_at or '-'}")
    console.print(f"  [dim]Finished:[/dim]  {job.finished_at or '-'}")
    if job.error_message:
        console.print(f"  [dim]Error:[/dim]     [red]{job.error_message}[/red]")
    if job.result is not None:
        console.print(f"  [dim]Result:[/dim]    {job.result}")
