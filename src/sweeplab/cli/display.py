# Copyright (c) Syntropy Systems
"""Rich rendering shared by the run, show and history commands."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from rich.table import Table

from sweeplab.models import METRIC_NAMES, TaskStatus

if TYPE_CHECKING:
    from collections.abc import Sequence

    from rich.console import Console

    from sweeplab.models import BatchJob, BatchSummary, GenerationTask

STATUS_STYLES = {
    "queued": "dim",
    "running": "blue",
    "paused": "yellow",
    "stopped": "yellow",
    "completed": "green",
    "failed": "red",
}

METRIC_LABELS = {
    "coherence": "Coh",
    "completeness": "Comp",
    "readability": "Read",
    "creativity": "Creat",
    "specificity": "Spec",
    "length_appropriateness": "Len",
}


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def format_score(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:.3f}"


def format_correlation(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    color = "green" if value > 0 else "red" if value < 0 else "white"
    return f"[{color}]{value:+.3f}[/{color}]"


def truncate(text: Optional[str], width: int = 80) -> str:
    if not text:
        return ""
    flat = " ".join(text.split())
    if len(flat) > width:
        return flat[: width - 3] + "..."
    return flat


def batch_table(batches: Sequence[BatchJob]) -> Table:
    """Listing of batches, one row each."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Tasks", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Created")

    for job in batches:
        table.add_row(
            job.id,
            job.name,
            styled_status(job.status.value),
            str(job.total_tasks),
            str(job.succeeded),
            str(job.failed),
            job.created_at[:19].replace("T", " "),
        )
    return table


def top_tasks(tasks: Sequence[GenerationTask], limit: int) -> list[GenerationTask]:
    """Succeeded tasks, best overall score first."""
    scored = [t for t in tasks if t.status == TaskStatus.SUCCEEDED and t.score]
    scored.sort(
        key=lambda t: (
            -(t.score.overall if t.score else 0.0),
            t.iteration_index,
            t.combination.index,
        )
    )
    return scored[:limit]


def results_table(tasks: Sequence[GenerationTask], title: str) -> Table:
    """Scores of the given tasks, one row each."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("#", style="dim")
    table.add_column("Parameters")
    table.add_column("Iter", justify="right")
    for name in METRIC_NAMES:
        table.add_column(METRIC_LABELS[name], justify="right")
    table.add_column("Overall", justify="right", style="bold")

    for task in tasks:
        metrics = task.score.metrics() if task.score else {}
        table.add_row(
            str(task.combination.index),
            task.combination.label() or "-",
            str(task.iteration_index),
            *(format_score(metrics.get(name)) for name in METRIC_NAMES),
            format_score(task.score.overall if task.score else None),
        )
    return table


def print_summary(
    console: Console,
    batch: BatchJob,
    summary: BatchSummary,
    tasks: Sequence[GenerationTask],
    top: int = 5,
) -> None:
    """Print the batch header, best result, correlations and top results."""
    console.print(f"[bold]Batch:[/bold] {batch.name} [dim]({batch.id})[/dim]")
    console.print(f"  [dim]status:[/dim] {styled_status(batch.status.value)}")
    console.print(
        f"  [dim]tasks:[/dim] {batch.total_tasks} total, "
        f"{batch.succeeded} succeeded, {batch.failed} failed, {batch.not_run} not run"
    )
    if batch.error:
        console.print(f"  [red]error:[/red] {batch.error}")

    if summary.is_empty:
        console.print("\n[yellow]No succeeded tasks to summarize[/yellow]")
        return

    best = summary.best
    if best is not None and best.score is not None:
        console.print(
            f"\n[bold green]Best:[/bold green] {best.combination.label() or '(no parameters)'} "
            f"iteration {best.iteration_index} overall {best.score.overall:.3f}"
        )
        console.print(f"  [dim]{truncate(best.result_text, 120)}[/dim]")
    if summary.best_combination is not None:
        stats = summary.best_combination
        console.print(
            f"[bold]Best combination on average:[/bold] "
            f"{stats.combination.label() or '(no parameters)'} "
            f"mean {stats.mean_overall:.3f} over {stats.count}"
        )
    console.print(f"[bold]Mean overall:[/bold] {format_score(summary.mean_overall)}")

    if summary.correlations:
        corr = Table(title="Parameter correlation with overall", header_style="bold")
        corr.add_column("Parameter")
        corr.add_column("Pearson r", justify="right")
        for name, value in summary.correlations.items():
            corr.add_row(name, format_correlation(value))
        console.print()
        console.print(corr)

    console.print()
    console.print(results_table(top_tasks(tasks, top), title=f"Top {top} results"))
