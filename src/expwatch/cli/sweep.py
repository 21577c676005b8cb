# Copyright (c) Syntropy Systems
"""expwatch sweep and cleanup commands."""

from __future__ import annotations

from contextlib import closing
from typing import Optional

import typer
from rich.console import Console

from expwatch.cli.common import open_project
from expwatch.db import cleanup_old_versions, get_connection, get_dataset, get_datasets
from expwatch.jobs import JobQueue
from expwatch.orchestrator import DetectionOrchestrator

console = Console()


def sweep() -> None:
    """
    Recover detection runs that never finished.

    Fails versions running longer than running_timeout and re-queues datasets
    stuck pending longer than pending_timeout. A worker picks up the re-queued
    runs.
    """
    db_path, config = open_project()
    orchestrator = DetectionOrchestrator(db_path, scraper=None, config=config, queue=JobQueue(db_path))
    result = orchestrator.recover()

    if result.purged_jobs:
        console.print(f"[dim]Purged {result.purged_jobs} finished job(s)[/dim]")
    if not (result.timed_out_versions or result.restarted_datasets or result.failed_jobs):
        console.print("[dim]Nothing to recover[/dim]")
        return

    for version in result.timed_out_versions:
        console.print(
            f"[yellow]Timed out[/yellow] {version.dataset_id} v{version.version_number} "
            f"[dim](started {version.start_time})[/dim]"
        )
    for dataset_id in result.restarted_datasets:
        console.print(f"[blue]Re-queued[/blue] {dataset_id}")
    if result.failed_jobs:
        console.print(f"[yellow]Failed {len(result.failed_jobs)} stale job(s)[/yellow]")


def cleanup(
    dataset_id: Optional[str] = typer.Argument(None, help="Dataset ID (default: all datasets)"),
    keep: Optional[int] = typer.Option(None, "--keep", "-k", min=1, help="Versions to keep per dataset"),
) -> None:
    """Delete old versions, keeping the newest ones."""
    db_path, config = open_project()
    keep_versions = keep if keep is not None else config.keep_versions

    with closing(get_connection(db_path)) as conn:
        if dataset_id is not None:
            if get_dataset(conn, dataset_id) is None:
                console.print(f"[red]Error:[/red] Dataset not found: {dataset_id}")
                raise typer.Exit(1)
            dataset_ids = [dataset_id]
        else:
            dataset_ids = [d.id for d in get_datasets(conn)]

        total = 0
        for current in dataset_ids:
            deleted = cleanup_old_versions(conn, current, keep_versions)
            if deleted:
                console.print(f"  {current}: deleted {deleted} version(s)")
            total += deleted

    console.print(f"[green]Removed {total} old version(s)[/green] [dim](keeping {keep_versions} per dataset)[/dim]")
