# Copyright (c) Syntropy Systems
"""sweeplab run command."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
)
from rich.prompt import Confirm

from sweeplab.cli.display import print_summary
from sweeplab.config import find_sweeplab_dir, get_db_path, load_config
from sweeplab.db import SnapshotStore
from sweeplab.errors import ConfigurationError, SchedulerStateError
from sweeplab.grid import SweepConfig
from sweeplab.models import BatchStatus
from sweeplab.scheduler import Scheduler

if TYPE_CHECKING:
    from sweeplab.models import BatchJob

console = Console()

POLL_INTERVAL = 0.1


def _watch(scheduler: Scheduler, batch_id: str) -> BatchJob:
    """Render progress until the batch is terminal."""
    job = scheduler.get_progress(batch_id)
    with Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn(
            "[green]{task.fields[ok]} ok[/green] [red]{task.fields[failed]} failed[/red]"
        ),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    ) as progress:
        bar = progress.add_task(job.name, total=job.total_tasks, ok=0, failed=0)
        while True:
            job = scheduler.wait(batch_id, timeout=POLL_INTERVAL)
            progress.update(
                bar,
                completed=job.completed_tasks,
                ok=job.succeeded,
                failed=job.failed,
            )
            if job.is_terminal:
                return job


def _interrupt(scheduler: Scheduler, batch_id: str) -> None:
    """Pause on Ctrl-C and ask whether to stop or carry on."""
    try:
        _ = scheduler.pause(batch_id)
    except SchedulerStateError:
        # Already finished or stopped
        return
    console.print("\n[yellow]Paused.[/yellow] In-flight requests will finish.")
    try:
        stop = Confirm.ask("Stop the batch?", console=console, default=True)
    except (KeyboardInterrupt, EOFError):
        stop = True
    try:
        if stop:
            _ = scheduler.stop(batch_id)
            console.print("[yellow]Stopped[/yellow]")
        else:
            _ = scheduler.resume(batch_id)
    except SchedulerStateError as e:
        console.print(f"[red]Error:[/red] {e}")


def run(
    config_file: Path = typer.Argument(
        ...,
        help="Path to sweep configuration YAML file",
        exists=True,
    ),
    iterations: Optional[int] = typer.Option(
        None, "--iterations", "-i", help="Iterations per combination (overrides config)"
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", help="Concurrent provider calls"
    ),
    provider: Optional[str] = typer.Option(
        None, "--provider", "-p", help="Provider to use: mock or openai"
    ),
    top: int = typer.Option(5, "--top", "-n", help="Number of top results to show"),
    save: bool = typer.Option(
        True, "--save/--no-save", help="Save results to the project database"
    ),
) -> None:
    """Run a sweep: generate, score and summarize every combination.

    Press Ctrl-C to pause; you can then stop the batch or resume it.
    """
    project_dir = find_sweeplab_dir()
    try:
        config = load_config(project_dir)
        if concurrency is not None:
            config.concurrency = concurrency
        if provider is not None:
            config.provider = provider
        sweep_config = SweepConfig.from_yaml(config_file)
        scheduler = Scheduler.from_config(config)
    except (OSError, ConfigurationError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from e

    store: Optional[SnapshotStore] = None
    if save and project_dir is not None:
        store = SnapshotStore(get_db_path(project_dir))
        _ = scheduler.subscribe(store.record)
    elif save:
        console.print(
            "[yellow]No .sweeplab directory found, results will not be saved.[/yellow] "
            "Run 'sweeplab init' to keep a history."
        )

    try:
        batch_id = scheduler.create_batch(
            prompt=sweep_config.prompt,
            specs=sweep_config.parameters,
            iterations=iterations if iterations is not None else sweep_config.iterations,
            name=sweep_config.name,
            model=sweep_config.model or config.model,
            weights=sweep_config.weights or None,
        )
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    try:
        job = scheduler.start(batch_id)
        console.print(
            f"[bold]Running[/bold] {job.name} [dim]({job.id})[/dim]: "
            f"{job.total_tasks} tasks, concurrency {scheduler.concurrency}, "
            f"provider {scheduler.provider.name}"
        )
        while True:
            try:
                job = _watch(scheduler, batch_id)
                break
            except KeyboardInterrupt:
                _interrupt(scheduler, batch_id)
    finally:
        scheduler.shutdown()
        scheduler.provider.close()
        if store is not None:
            store.close()

    console.print()
    print_summary(
        console,
        job,
        scheduler.get_summary(batch_id),
        scheduler.get_tasks(batch_id),
        top=top,
    )
    if store is not None:
        console.print(
            f"\n[dim]Saved as {batch_id}. Export with:[/dim] "
            f"sweeplab export {batch_id} results.csv"
        )
    if job.status == BatchStatus.FAILED:
        raise typer.Exit(1)
