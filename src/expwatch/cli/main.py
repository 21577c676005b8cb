# Copyright (c) Syntropy Systems
"""Main CLI entry point for expwatch."""

import logging

import typer

from expwatch.cli.compare import compare
from expwatch.cli.dataset import dataset_app
from expwatch.cli.detect import detect
from expwatch.cli.history import history, show
from expwatch.cli.init_cmd import init
from expwatch.cli.search import search
from expwatch.cli.server_cmd import server
from expwatch.cli.status import status
from expwatch.cli.sweep import cleanup, sweep
from expwatch.cli.trends import trends
from expwatch.cli.worker import worker

app = typer.Typer(
    name="expwatch",
    help=(
        "Change detection for Optimizely experiments. Scan sites, "
        "version every scan, see what changed."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress to stderr"),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Register commands
_ = app.command()(init)
_ = app.command()(detect)
_ = app.command()(history)
_ = app.command()(show)
_ = app.command()(compare)
_ = app.command()(trends)
_ = app.command()(status)
_ = app.command()(sweep)
_ = app.command()(cleanup)
_ = app.command()(search)
_ = app.command()(worker)
_ = app.command()(server)

# Register dataset sub-app
app.add_typer(dataset_app, name="dataset")


if __name__ == "__main__":
    app()
