# Copyright (c) Syntropy Systems
"""Project lookup shared by the commands that read stored batches."""
from __future__ import annotations

import typer
from rich.console import Console

from sweeplab.config import get_db_path, require_sweeplab_dir
from sweeplab.db import SnapshotStore


def open_store(console: Console) -> SnapshotStore:
    """Open the project's snapshot store or exit with an error."""
    try:
        project_dir = require_sweeplab_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    return SnapshotStore(get_db_path(project_dir))
