# Copyright (c) Syntropy Systems
"""expwatch detect command."""

from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from expwatch.cli.common import build_scraper, open_project
from expwatch.errors import ExpwatchError
from expwatch.jobs import JobQueue
from expwatch.models.reports import BatchResult, DetectionResult
from expwatch.orchestrator import DetectionOrchestrator

console = Console()


def detect(
    dataset_id: Optional[str] = typer.Argument(None, help="Dataset to scan"),
    all_datasets: bool = typer.Option(False, "--all", "-a", help="Scan every dataset with URLs"),
    background: bool = typer.Option(
        False,
        "--background",
        "-b",
        help="Queue the run for 'expwatch worker' instead of running it here",
    ),
    trigger: str = typer.Option("manual", "--trigger", "-t", help="Trigger type: manual or cron"),
    triggered_by: str = typer.Option("cli", "--by", help="Who or what triggered the run"),
) -> None:
    """
    Scan a dataset's URLs and record what changed as a new version.

    Examples:

        expwatch detect abc123

        expwatch detect --all --background
    """
    if (dataset_id is None) == (not all_datasets):
        console.print("[red]Error:[/red] Give either a dataset ID or --all")
        raise typer.Exit(1)

    db_path, config = open_project()
    queue = JobQueue(db_path) if background else None

    with build_scraper(config) as scraper:
        orchestrator = DetectionOrchestrator(db_path, scraper, config, queue=queue)
        try:
            if all_datasets:
                _print_batch(orchestrator.run_for_all_datasets(trigger, triggered_by))
                return

            assert dataset_id is not None
            if background:
                job_id = orchestrator.start_for_dataset(dataset_id, trigger, triggered_by)
                if job_id is None:
                    console.print(f"[yellow]Detection already running or pending for {dataset_id}[/yellow]")
                    return
                console.print(f"[green]Queued detection job[/green] #{job_id}")
                console.print("[dim]Start 'expwatch worker' to process it.[/dim]")
                return

            def progress(percent: float, message: str) -> None:
                console.print(f"[dim]{percent:5.1f}%[/dim] {message}")

            result = orchestrator.run_for_dataset(dataset_id, trigger, triggered_by, progress=progress)
        except (ExpwatchError, ValueError) as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    _print_result(result)
    if result.status == "failed":
        raise typer.Exit(1)


def _print_result(result: DetectionResult) -> None:
    if result.status == "failed":
        console.print(f"[red]Version {result.version_number} failed:[/red] {result.error}")
        return

    console.print(f"\n[green]Version {result.version_number} completed[/green]")
    console.print(
        f"  [dim]URLs:[/dim] {result.successful_scans}/{result.urls_scanned} scanned"
        + (f", [red]{result.failed_scans} failed[/red]" if result.failed_scans else "")
    )
    if not result.has_changes:
        console.print("  No changes detected")
        return
    counts = result.changes_by_type
    console.print(
        f"  [dim]Changes:[/dim] {result.total_changes} "
        f"({counts.NEW} new, {counts.REMOVED} removed, "
        f"{counts.STATUS_CHANGED} status, {counts.MODIFIED} modified)"
    )
    if result.significant_changes:
        console.print("  [yellow]Significant changes[/yellow]")


def _print_batch(batch: BatchResult) -> None:
    if not batch.items:
        console.print("[dim]No datasets with URLs[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Dataset", style="dim")
    table.add_column("Name")
    table.add_column("Outcome")
    table.add_column("Detail")
    styles = {"started": "blue", "completed": "green", "skipped": "yellow", "failed": "red"}
    for item in batch.items:
        style = styles[item.outcome]
        if item.job_id is not None:
            detail = f"job #{item.job_id}"
        elif item.version_number is not None:
            detail = f"v{item.version_number}"
        else:
            detail = ""
        if item.error:
            detail = f"{detail} {item.error}".strip()
        table.add_row(item.dataset_id, item.dataset_name, f"[{style}]{item.outcome}[/{style}]", detail)
    console.print(table)
    console.print(
        f"[dim]{batch.started} started, {batch.skipped} skipped, {batch.failed} failed "
        f"of {batch.total_datasets}[/dim]"
    )
