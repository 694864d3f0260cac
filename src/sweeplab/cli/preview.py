# Copyright (c) Syntropy Systems
"""sweeplab preview command."""
from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from sweeplab import grid
from sweeplab.errors import ConfigurationError
from sweeplab.grid import SweepConfig

console = Console()

# Grids larger than this only show the first rows
MAX_PREVIEW_ROWS = 50


def preview(
    config_file: Path = typer.Argument(
        ...,
        help="Path to sweep configuration YAML file",
        exists=True,
    ),
    limit: int = typer.Option(
        MAX_PREVIEW_ROWS,
        "--limit", "-l",
        help="Maximum combinations to list",
    ),
) -> None:
    r"""Show the combinations a sweep would run, without calling any model.

    Example sweep.yaml:

    \b
        name: temperature-sweep
        prompt: Write a haiku about autumn.
        iterations: 3
        parameters:
          temperature:
            min: 0.0
            max: 1.0
            step: 0.25
          max_tokens:
            values: [100]
    """
    try:
        sweep_config = SweepConfig.from_yaml(config_file)
        grid.validate_specs(sweep_config.parameters)
    except (OSError, ConfigurationError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from e

    combinations = grid.expand(sweep_config.parameters)
    names = [spec.name for spec in sweep_config.parameters]

    table = Table(title=f"Sweep: {sweep_config.name or 'unnamed'}")
    table.add_column("#", style="dim")
    for name in names:
        table.add_column(name, justify="right")

    for combination in combinations[:limit]:
        table.add_row(
            str(combination.index),
            *(grid.format_value(combination[name]) for name in names),
        )

    for spec in sweep_config.parameters:
        console.print(
            f"  [dim]{spec.describe()}:[/dim] {grid.count_values(spec)} value(s)"
        )
    console.print(table)
    if len(combinations) > limit:
        console.print(f"[dim]... {len(combinations) - limit} more[/dim]")

    total = len(combinations) * sweep_config.iterations
    console.print(
        f"\n[bold]{len(combinations)} combinations[/bold] x "
        f"{sweep_config.iterations} iteration(s) = [bold]{total} tasks[/bold]"
    )
