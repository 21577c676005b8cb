# Copyright (c) Syntropy Systems
"""CLI command for running the expwatch server."""

import typer
import uvicorn
from rich.console import Console

from expwatch.cli.common import build_scraper, open_project
from expwatch.server import create_app

console = Console()


def server(
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
    background: bool = typer.Option(
        True,
        "--background/--no-background",
        help="Run the worker pool and scheduler inside the server",
    ),
):
    """
    Start the expwatch HTTP API.

    The server queues detection runs, serves version history, comparisons
    and trends, and by default runs the worker pool and cron scheduler.

    Examples:

        expwatch server

        # Bind to all interfaces (for remote access)
        expwatch server --host 0.0.0.0 --port 8080
    """
    db_path, config = open_project()
    with build_scraper(config) as scraper:
        app = create_app(db_path, scraper=scraper, config=config, start_background=background)

        console.print("[bold]expwatch server[/bold]")
        console.print(f"  Host: {host}")
        console.print(f"  Port: {port}")
        console.print(f"  Database: {db_path}")
        console.print(f"  Scraper: {config.scraper_url}")
        console.print()

        uvicorn.run(app, host=host, port=port)
