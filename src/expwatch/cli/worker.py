# Copyright (c) Syntropy Systems
"""expwatch worker command."""

from __future__ import annotations

import signal
from pathlib import Path

import typer
from rich.console import Console

from expwatch.cli.common import build_scraper, open_project
from expwatch.config import ExpwatchConfig
from expwatch.jobs import JobQueue, WorkerPool
from expwatch.models.reports import BatchResult
from expwatch.orchestrator import DetectionOrchestrator
from expwatch.scheduler import DETECTION_TASK, Scheduler
from expwatch.scraper import ScraperClient

console = Console()


def worker(
    workers: int = typer.Option(0, "--workers", "-w", min=0, help="Worker threads (default: max_concurrent_jobs)"),
    schedule: bool = typer.Option(True, "--schedule/--no-schedule", help="Run the cron scheduler too"),
    trigger_now: bool = typer.Option(False, "--trigger-now", help="Queue detection for all datasets on start"),
) -> None:
    """
    Process queued detection jobs, and run scheduled detection.

    Runs until interrupted. The scheduler queues monthly detection for every
    dataset and runs the recovery sweep.
    """
    db_path, config = open_project()
    with build_scraper(config) as scraper:
        _run_worker(db_path, config, scraper, workers, schedule, trigger_now)


def _run_worker(
    db_path: Path,
    config: ExpwatchConfig,
    scraper: ScraperClient,
    workers: int,
    schedule: bool,
    trigger_now: bool,
) -> None:
    queue = JobQueue(db_path)
    orchestrator = DetectionOrchestrator(db_path, scraper, config, queue=queue)
    pool = WorkerPool(queue, workers=workers or config.max_concurrent_jobs, poll_interval=config.poll_interval)
    scheduler = Scheduler.for_orchestrator(orchestrator, config) if schedule else None

    def _signal_handler(signum, frame):
        console.print("\n[yellow]Shutdown requested, finishing current jobs...[/yellow]")
        pool.stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    recovered = orchestrator.recover()
    if recovered.timed_out_versions or recovered.restarted_datasets:
        console.print(
            f"[yellow]Recovered {len(recovered.timed_out_versions)} timed out version(s), "
            f"re-queued {len(recovered.restarted_datasets)} dataset(s)[/yellow]"
        )

    pool.start()
    console.print(f"[green]Worker pool started:[/green] {pool.workers} thread(s)")
    console.print(f"[dim]Polling for jobs every {config.poll_interval}s...[/dim]")

    if scheduler is not None:
        scheduler.start()
        for task in scheduler.tasks():
            console.print(f"  [dim]{task.name}:[/dim] {task.schedule.expression} (next {scheduler.next_run(task.name)})")
    if trigger_now:
        if scheduler is not None:
            batch = scheduler.trigger_now(DETECTION_TASK)
        else:
            batch = orchestrator.run_for_all_datasets("cron", "worker")
        if isinstance(batch, BatchResult):
            console.print(f"[blue]Triggered detection:[/blue] {batch.started} dataset(s) queued, {batch.skipped} skipped")

    try:
        pool.wait()
    finally:
        if scheduler is not None:
            scheduler.stop()
        pool.stop()
        console.print("[dim]Worker stopped[/dim]")
