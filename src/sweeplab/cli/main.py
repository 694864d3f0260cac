# Copyright (c) Syntropy Systems
"""Main CLI entry point for sweeplab."""

import logging

import typer
from rich.logging import RichHandler

from sweeplab.cli.export import export
from sweeplab.cli.history import history, show
from sweeplab.cli.init_cmd import init
from sweeplab.cli.preview import preview
from sweeplab.cli.run_cmd import run
from sweeplab.cli.server_cmd import server

app = typer.Typer(
    name="sweeplab",
    help=(
        "Prompt parameter sweeps. Run a prompt across a grid of sampling "
        "parameters, score every response, find the best settings."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show scheduler and provider logs"
    ),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


# Register commands
_ = app.command()(init)
_ = app.command()(preview)
_ = app.command()(run)
_ = app.command()(history)
_ = app.command()(show)
_ = app.command(name="export")(export)
_ = app.command()(server)


if __name__ == "__main__":
    app()
