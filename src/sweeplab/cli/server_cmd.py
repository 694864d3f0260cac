# Copyright (c) Syntropy Systems
"""CLI command for running the sweeplab HTTP server."""

import typer
import uvicorn
from rich.console import Console

from sweeplab.config import find_sweeplab_dir, load_config
from sweeplab.errors import ConfigurationError
from sweeplab.server.app import create_app

console = Console()


def server(
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
    save: bool = typer.Option(
        True, "--save/--no-save", help="Save batches to the project database"
    ),
) -> None:
    """
    Start the sweeplab HTTP API.

    Batches are created and controlled over HTTP and run in this process.

    Examples:

        # Serve on localhost:8080
        sweeplab server

        # Bind to all interfaces (for remote access)
        sweeplab server --host 0.0.0.0 --port 9000
    """
    project_dir = find_sweeplab_dir()
    try:
        config = load_config(project_dir)
        app = create_app(
            config=config,
            project_dir=project_dir if save else None,
        )
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print("[bold]sweeplab server[/bold]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Provider: {config.provider}")
    console.print(f"  Concurrency: {config.concurrency}")
    if project_dir is not None and save:
        console.print(f"  Database: {project_dir / 'sweeplab.db'}")
    else:
        console.print("  Database: none (batches kept in memory)")
    console.print()

    uvicorn.run(app, host=host, port=port, log_level="info")
