# Copyright (c) Syntropy Systems
"""expwatch dataset subcommand group."""

from __future__ import annotations

from contextlib import closing
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from expwatch.cli.common import open_project, status_style
from expwatch.db import create_dataset, get_connection, get_dataset, get_datasets, update_dataset_urls

console = Console()

dataset_app = typer.Typer(
    name="dataset",
    help="Manage the URL lists that get scanned.",
    no_args_is_help=True,
)


def _read_urls(urls: list[str], file: Optional[Path]) -> list[str]:
    collected = [u.strip() for u in urls if u.strip()]
    if file is not None:
        if not file.exists():
            console.print(f"[red]Error:[/red] File not found: {file}")
            raise typer.Exit(1)
        for line in file.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                collected.append(line)
    # Keep first occurrence order
    return list(dict.fromkeys(collected))


def add(
    name: str = typer.Argument(..., help="Dataset name"),
    urls: Optional[list[str]] = typer.Argument(None, help="URLs to scan"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="File with one URL per line"),
    dataset_id: Optional[str] = typer.Option(None, "--id", help="Explicit dataset ID"),
) -> None:
    """Create a dataset from URLs and/or a URL file."""
    db_path, _ = open_project()
    url_list = _read_urls(urls or [], file)
    if not url_list:
        console.print("[red]Error:[/red] No URLs given")
        raise typer.Exit(1)

    with closing(get_connection(db_path)) as conn:
        if dataset_id is not None and get_dataset(conn, dataset_id) is not None:
            console.print(f"[red]Error:[/red] Dataset {dataset_id} already exists")
            raise typer.Exit(1)
        new_id = create_dataset(conn, name, url_list, dataset_id)

    console.print(f"[green]Created dataset[/green] {new_id} [dim]({len(url_list)} URLs)[/dim]")


def set_urls(
    dataset_id: str = typer.Argument(..., help="Dataset ID"),
    urls: Optional[list[str]] = typer.Argument(None, help="URLs to scan"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="File with one URL per line"),
) -> None:
    """Replace the URL list of a dataset."""
    db_path, _ = open_project()
    url_list = _read_urls(urls or [], file)
    with closing(get_connection(db_path)) as conn:
        if get_dataset(conn, dataset_id) is None:
            console.print(f"[red]Error:[/red] Dataset not found: {dataset_id}")
            raise typer.Exit(1)
        update_dataset_urls(conn, dataset_id, url_list)
    console.print(f"[green]Updated dataset[/green] {dataset_id} [dim]({len(url_list)} URLs)[/dim]")


def list_datasets() -> None:
    """List datasets and their detection status."""
    db_path, _ = open_project()
    with closing(get_connection(db_path)) as conn:
        datasets = get_datasets(conn)

    if not datasets:
        console.print("[dim]No datasets. Create one with 'expwatch dataset add'.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("URLs", justify="right")
    table.add_column("Status")
    table.add_column("Versions", justify="right")
    table.add_column("Last run")

    for dataset in datasets:
        style = status_style(dataset.change_detection_status)
        table.add_row(
            dataset.id,
            dataset.name,
            str(len(dataset.urls)),
            f"[{style}]{dataset.change_detection_status}[/{style}]",
            str(dataset.change_detection_stats.total_versions),
            dataset.last_change_detection_run or "-",
        )
    console.print(table)


def show(dataset_id: str = typer.Argument(..., help="Dataset ID")) -> None:
    """Show one dataset with its URLs and counters."""
    db_path, _ = open_project()
    with closing(get_connection(db_path)) as conn:
        dataset = get_dataset(conn, dataset_id)

    if dataset is None:
        console.print(f"[red]Error:[/red] Dataset not found: {dataset_id}")
        raise typer.Exit(1)

    stats = dataset.change_detection_stats
    console.print(f"\n[bold]{dataset.name}[/bold] [dim]({dataset.id})[/dim]\n")
    console.print(f"  [dim]Status:[/dim]         {dataset.change_detection_status}")
    if dataset.change_detection_error:
        console.print(f"  [dim]Error:[/dim]          [red]{dataset.change_detection_error}[/red]")
    console.print(f"  [dim]Last run:[/dim]       {dataset.last_change_detection_run or '-'}")
    console.print(f"  [dim]Versions:[/dim]       {stats.total_versions} (latest v{stats.last_version_number})")
    console.print(f"  [dim]Changes:[/dim]        {stats.total_changes_detected}")
    console.print(f"  [dim]Runs:[/dim]           {stats.manual_runs} manual, {stats.cron_runs} cron")
    console.print(f"  [dim]Last duration:[/dim]  {stats.last_run_duration or '-'}")
    console.print(f"\n[bold]URLs[/bold] ({len(dataset.urls)})")
    for url in dataset.urls:
        console.print(f"  {url}")


# Register subcommands
_ = dataset_app.command()(add)
_ = dataset_app.command(name="set-urls")(set_urls)
_ = dataset_app.command(name="list")(list_datasets)
_ = dataset_app.command()(show)
