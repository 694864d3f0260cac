# Copyright (c) Syntropy Systems
"""sweeplab init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from sweeplab.config import PROJECT_DIR_NAME, SweeplabConfig, get_db_path
from sweeplab.db import init_db

console = Console()

EXAMPLE_SWEEP = {
    "name": "temperature-sweep",
    "prompt": "Write a short product description for a solar powered garden lamp.",
    "iterations": 2,
    "parameters": {
        "temperature": {"min": 0.0, "max": 1.0, "step": 0.5},
        "top_p": {"values": [1.0]},
        "max_tokens": {"values": [150]},
    },
}


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new sweeplab project.

    Creates a .sweeplab directory with configuration, the results database
    and an example sweep file.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR_NAME

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    project_dir.mkdir(parents=True)

    config_path = project_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(SweeplabConfig().to_dict(), f, default_flow_style=False)

    db_path = get_db_path(project_dir)
    init_db(db_path)

    example_path = target / "sweep.yaml"
    if not example_path.exists():
        with example_path.open("w") as f:
            yaml.dump(EXAMPLE_SWEEP, f, default_flow_style=False, sort_keys=False)

    console.print(f"[green]Initialized sweeplab project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]example sweep:[/dim] {example_path}")
