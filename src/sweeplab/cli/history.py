# Copyright (c) Syntropy Systems
"""sweeplab history and show commands."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from sweeplab.aggregate import summarize
from sweeplab.cli._project import open_store
from sweeplab.cli.display import batch_table, print_summary, results_table
from sweeplab.errors import BatchNotFoundError

console = Console()


def history(
    status: Optional[str] = typer.Option(
        None,
        "--status", "-s",
        help="Filter by status (completed, stopped, failed, ...)",
    ),
    last: int = typer.Option(
        20,
        "--last", "-n",
        help="Number of batches to show",
    ),
) -> None:
    """List stored batches, newest first."""
    store = open_store(console)
    try:
        batches = store.list_batches(status=status, limit=last)
    finally:
        store.close()

    if not batches:
        console.print("[dim]No batches found[/dim]")
        return

    console.print(batch_table(batches))


def show(
    batch_id: str = typer.Argument(
        ...,
        help="Batch ID (or unique prefix) to show",
    ),
    top: int = typer.Option(5, "--top", "-n", help="Number of top results to show"),
    all_results: bool = typer.Option(
        False, "--all", "-a", help="List every task instead of the top results"
    ),
) -> None:
    """Show the summary and best results of a stored batch."""
    store = open_store(console)
    try:
        batch = store.load_batch(batch_id)
        tasks = store.load_tasks(batch.id)
    except BatchNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        store.close()

    console.print(f"[bold]Prompt:[/bold] {batch.prompt}")
    if batch.model:
        console.print(f"[bold]Model:[/bold] {batch.model}")
    for spec in batch.specs:
        console.print(f"  [dim]{spec.describe()}[/dim]")
    console.print()

    summary = summarize(batch.id, tasks, batch.specs)
    print_summary(console, batch, summary, tasks, top=top)

    if all_results:
        console.print()
        console.print(results_table(tasks, title="All results"))
