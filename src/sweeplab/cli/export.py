# Copyright (c) Syntropy Systems
"""Export command - export a batch's results to CSV/JSON."""
from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from sweeplab.cli._project import open_store
from sweeplab.errors import BatchNotFoundError, ConfigurationError
from sweeplab.export import EXPORT_FORMATS, export_batch

console = Console()


def export(
    batch_id: str = typer.Argument(..., help="Batch ID (or unique prefix) to export"),
    output: Path = typer.Argument(..., help="Output file path (.csv or .json)"),
    status: str | None = typer.Option(
        None, "--status", "-s", help="Only export tasks with this status"
    ),
) -> None:
    """Export a batch's tasks to CSV or JSON format.

    CSV has one row per task with param.* and score.* columns. JSON holds
    the batch, its summary and every task.

    Examples:
        sweeplab export 3f9a results.csv
        sweeplab export 3f9a results.json --status succeeded

    """
    if output.suffix.lower() not in EXPORT_FORMATS:
        console.print("[red]Output must be .csv or .json[/red]")
        raise typer.Exit(1)

    store = open_store(console)
    try:
        batch = store.load_batch(batch_id)
        tasks = store.load_tasks(batch.id, status=status)
    except BatchNotFoundError as e:
        console.print(f"[red]Batch not found: {batch_id}[/red]")
        raise typer.Exit(1) from e
    finally:
        store.close()

    if not tasks:
        console.print("[yellow]No tasks to export[/yellow]")
        raise typer.Exit(0)

    try:
        count = export_batch(output, batch, tasks)
    except (OSError, ConfigurationError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]Exported {count} task(s) to {output}[/green]")
