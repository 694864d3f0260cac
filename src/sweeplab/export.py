# Copyright (c) Syntropy Systems
"""Export batch results to CSV or JSON."""
from __future__ import annotations

import csv
from typing import TYPE_CHECKING, Optional, TextIO, cast

from pydantic import TypeAdapter

from sweeplab.aggregate import summarize
from sweeplab.errors import ConfigurationError
from sweeplab.models import METRIC_NAMES
from sweeplab.models.base import JSONValue

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from sweeplab.models import BatchJob, BatchSummary, GenerationTask

EXPORT_FORMATS = (".csv", ".json")

_EXPORT_ADAPTER = TypeAdapter(dict[str, JSONValue])

BASE_FIELDS = [
    "batch_id",
    "combination_index",
    "iteration_index",
    "status",
    "attempt",
    "latency_ms",
    "total_tokens",
    "error",
]

CsvValue = Optional[object]


def task_row(task: GenerationTask) -> dict[str, CsvValue]:
    """Flatten a task into ``param.*`` and ``score.*`` columns."""
    row: dict[str, CsvValue] = {
        "batch_id": task.batch_id,
        "combination_index": task.combination.index,
        "iteration_index": task.iteration_index,
        "status": task.status.value,
        "attempt": task.attempt,
        "latency_ms": round(task.latency_ms, 1) if task.latency_ms is not None else None,
        "total_tokens": task.usage.total_tokens if task.usage else None,
        "error": task.error,
        "response": task.result_text,
    }
    for name, value in task.combination.items():
        row[f"param.{name}"] = value
    if task.score is not None:
        for name, value in task.score.metrics().items():
            row[f"score.{name}"] = round(value, 4)
        row["score.overall"] = round(task.score.overall, 4)
    return row


def write_csv_rows(stream: TextIO, tasks: Sequence[GenerationTask]) -> int:
    """Write a header and one row per task to an open text stream."""
    param_keys: list[str] = []
    for task in tasks:
        for name in task.combination.keys():
            if name not in param_keys:
                param_keys.append(name)

    fieldnames = list(BASE_FIELDS)
    fieldnames.extend(f"param.{k}" for k in param_keys)
    fieldnames.extend(f"score.{m}" for m in METRIC_NAMES)
    fieldnames.append("score.overall")
    fieldnames.append("response")

    writer = csv.DictWriter(stream, fieldnames=fieldnames, extrasaction="ignore")
    writer.writeheader()
    for task in tasks:
        writer.writerow(task_row(task))
    return len(tasks)


def write_csv(output: Path, tasks: Sequence[GenerationTask]) -> int:
    """Write one row per task. Returns the number of rows written."""
    with output.open("w", newline="") as f:
        return write_csv_rows(f, tasks)


def export_payload(
    batch: BatchJob,
    tasks: Sequence[GenerationTask],
    summary: Optional[BatchSummary] = None,
) -> dict[str, JSONValue]:
    """JSON document holding the batch, its tasks and its summary."""
    if summary is None:
        summary = summarize(batch.id, tasks, batch.specs)
    return {
        "batch": cast("JSONValue", batch.model_dump(mode="json")),
        "summary": cast("JSONValue", summary.model_dump(mode="json")),
        "tasks": [cast("JSONValue", t.model_dump(mode="json")) for t in tasks],
    }


def write_json(
    output: Path,
    batch: BatchJob,
    tasks: Sequence[GenerationTask],
    summary: Optional[BatchSummary] = None,
) -> int:
    """Write the batch, tasks and summary. Returns the number of tasks."""
    payload = export_payload(batch, tasks, summary)
    _ = output.write_bytes(_EXPORT_ADAPTER.dump_json(payload, indent=2))
    return len(tasks)


def export_batch(
    output: Path,
    batch: BatchJob,
    tasks: Sequence[GenerationTask],
    summary: Optional[BatchSummary] = None,
) -> int:
    """Write to CSV or JSON depending on the file extension."""
    suffix = output.suffix.lower()
    if suffix not in EXPORT_FORMATS:
        msg = f"Output must be .csv or .json, got '{output.name}'"
        raise ConfigurationError(msg)
    if suffix == ".csv":
        return write_csv(output, tasks)
    return write_json(output, batch, tasks, summary)
