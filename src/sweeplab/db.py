# Copyright (c) Syntropy Systems
"""SQLite snapshot store for batches and their tasks."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from typing import TYPE_CHECKING, Optional

from sweeplab.errors import BatchNotFoundError
from sweeplab.models import (
    BatchJob,
    Combination,
    GenerationTask,
    ParameterSpec,
    QualityScore,
    QualityWeights,
    TokenUsage,
)

if TYPE_CHECKING:
    from pathlib import Path

    from sweeplab.models import BatchEvent

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS batches (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    prompt TEXT NOT NULL,
    model TEXT,
    specs TEXT NOT NULL,    -- JSON array of parameter specs
    iterations INTEGER NOT NULL,
    weights TEXT NOT NULL,  -- JSON object, metric -> weight
    status TEXT NOT NULL,   -- queued, running, paused, stopped, completed, failed
    created_at TEXT NOT NULL,
    started_at TEXT,
    ended_at TEXT,
    progress REAL DEFAULT 0,
    total_tasks INTEGER DEFAULT 0,
    succeeded INTEGER DEFAULT 0,
    failed INTEGER DEFAULT 0,
    not_run INTEGER DEFAULT 0,
    error TEXT
);

CREATE TABLE IF NOT EXISTS tasks (
    batch_id TEXT NOT NULL REFERENCES batches(id),
    combination_index INTEGER NOT NULL,
    iteration_index INTEGER NOT NULL,
    params TEXT NOT NULL,  -- JSON object, parameter -> value
    status TEXT NOT NULL,
    attempt INTEGER DEFAULT 0,
    result_text TEXT,
    score TEXT,            -- JSON QualityScore
    overall REAL,
    error TEXT,
    usage TEXT,            -- JSON TokenUsage
    latency_ms REAL,
    started_at TEXT,
    finished_at TEXT,
    PRIMARY KEY (batch_id, combination_index, iteration_index)
);

CREATE INDEX IF NOT EXISTS idx_batches_created ON batches(created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_overall ON tasks(batch_id, overall);
"""


def get_connection(db_path: Path, check_same_thread: bool = True) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(
        str(db_path),
        timeout=5.0,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


# --- Batch Operations ---

def upsert_batch(conn: sqlite3.Connection, job: BatchJob) -> None:
    """Insert a batch or overwrite its mutable fields."""
    conn.execute(
        """
        INSERT INTO batches (
            id, name, prompt, model, specs, iterations, weights, status,
            created_at, started_at, ended_at, progress, total_tasks,
            succeeded, failed, not_run, error
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            status = excluded.status,
            started_at = excluded.started_at,
            ended_at = excluded.ended_at,
            progress = excluded.progress,
            total_tasks = excluded.total_tasks,
            succeeded = excluded.succeeded,
            failed = excluded.failed,
            not_run = excluded.not_run,
            error = excluded.error
        """,
        (
            job.id,
            job.name,
            job.prompt,
            job.model,
            json.dumps([spec.model_dump() for spec in job.specs]),
            job.iterations_per_combination,
            json.dumps(job.weights.as_dict()),
            job.status.value,
            job.created_at,
            job.started_at,
            job.ended_at,
            job.progress,
            job.total_tasks,
            job.succeeded,
            job.failed,
            job.not_run,
            job.error,
        ),
    )


def _deserialize_batch(row: sqlite3.Row) -> BatchJob:
    """Convert a batch row back into a model."""
    return BatchJob(
        id=row["id"],
        name=row["name"],
        prompt=row["prompt"],
        model=row["model"],
        specs=[ParameterSpec.model_validate(s) for s in json.loads(row["specs"])],
        iterations_per_combination=row["iterations"],
        weights=QualityWeights(**json.loads(row["weights"])),
        status=row["status"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        progress=row["progress"] or 0.0,
        total_tasks=row["total_tasks"] or 0,
        succeeded=row["succeeded"] or 0,
        failed=row["failed"] or 0,
        not_run=row["not_run"] or 0,
        error=row["error"],
    )


def get_batch(conn: sqlite3.Connection, batch_id: str) -> Optional[BatchJob]:
    """Get a batch by ID."""
    row = conn.execute("SELECT * FROM batches WHERE id = ?", (batch_id,)).fetchone()
    if row is None:
        return None
    return _deserialize_batch(row)


def find_batch(conn: sqlite3.Connection, prefix: str) -> Optional[BatchJob]:
    """Get a batch by full ID or unambiguous ID prefix."""
    exact = get_batch(conn, prefix)
    if exact is not None:
        return exact
    if not prefix:
        return None
    rows = conn.execute(
        "SELECT * FROM batches WHERE substr(id, 1, ?) = ? LIMIT 2",
        (len(prefix), prefix),
    ).fetchall()
    if len(rows) != 1:
        return None
    return _deserialize_batch(rows[0])


def get_batches(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[BatchJob]:
    """Get batches, newest first."""
    if status:
        rows = conn.execute(
            "SELECT * FROM batches WHERE status = ? ORDER BY created_at DESC LIMIT ?",
            (status, limit),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM batches ORDER BY created_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
    return [_deserialize_batch(row) for row in rows]


def delete_batch(conn: sqlite3.Connection, batch_id: str) -> None:
    """Delete a batch and its tasks."""
    conn.execute("DELETE FROM tasks WHERE batch_id = ?", (batch_id,))
    conn.execute("DELETE FROM batches WHERE id = ?", (batch_id,))


# --- Task Operations ---

def upsert_task(conn: sqlite3.Connection, task: GenerationTask) -> None:
    """Insert a task or overwrite it with its latest state."""
    conn.execute(
        """
        INSERT INTO tasks (
            batch_id, combination_index, iteration_index, params, status,
            attempt, result_text, score, overall, error, usage, latency_ms,
            started_at, finished_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(batch_id, combination_index, iteration_index) DO UPDATE SET
            status = excluded.status,
            attempt = excluded.attempt,
            result_text = excluded.result_text,
            score = excluded.score,
            overall = excluded.overall,
            error = excluded.error,
            usage = excluded.usage,
            latency_ms = excluded.latency_ms,
            started_at = excluded.started_at,
            finished_at = excluded.finished_at
        """,
        (
            task.batch_id,
            task.combination.index,
            task.iteration_index,
            json.dumps(task.combination.values),
            task.status.value,
            task.attempt,
            task.result_text,
            task.score.model_dump_json() if task.score else None,
            task.score.overall if task.score else None,
            task.error,
            task.usage.model_dump_json() if task.usage else None,
            task.latency_ms,
            task.started_at,
            task.finished_at,
        ),
    )


def _deserialize_task(row: sqlite3.Row) -> GenerationTask:
    """Convert a task row back into a model."""
    return GenerationTask(
        batch_id=row["batch_id"],
        combination=Combination(
            index=row["combination_index"], values=json.loads(row["params"])
        ),
        iteration_index=row["iteration_index"],
        attempt=row["attempt"] or 0,
        status=row["status"],
        result_text=row["result_text"],
        score=QualityScore.model_validate_json(row["score"]) if row["score"] else None,
        error=row["error"],
        usage=TokenUsage.model_validate_json(row["usage"]) if row["usage"] else None,
        latency_ms=row["latency_ms"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


def get_tasks(
    conn: sqlite3.Connection,
    batch_id: str,
    status: Optional[str] = None,
) -> list[GenerationTask]:
    """Get a batch's tasks in combination-then-iteration order."""
    query = "SELECT * FROM tasks WHERE batch_id = ?"
    params: list[object] = [batch_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY combination_index, iteration_index"
    rows = conn.execute(query, params).fetchall()
    return [_deserialize_task(row) for row in rows]


class SnapshotStore:
    """Persists scheduler state as it changes.

    Pass ``store.record`` to ``Scheduler.subscribe``. Events arrive from
    several threads, so the store holds one connection behind its own lock.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        init_db(db_path)
        self._conn = get_connection(db_path, check_same_thread=False)
        self._lock = threading.Lock()

    def record(self, event: BatchEvent) -> None:
        """Write the batch, and the task if the event carries one.

        A ``deleted`` event removes the batch and its tasks instead.
        """
        with self._lock:
            conn = self._conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                if event.kind == "deleted":
                    delete_batch(conn, event.batch.id)
                else:
                    upsert_batch(conn, event.batch)
                    if event.task is not None:
                        upsert_task(conn, event.task)
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

    def list_batches(self, status: Optional[str] = None, limit: int = 50) -> list[BatchJob]:
        with self._lock:
            return get_batches(self._conn, status=status, limit=limit)

    def load_batch(self, batch_id: str) -> BatchJob:
        """Load a batch by ID or ID prefix. Raises BatchNotFoundError."""
        with self._lock:
            job = find_batch(self._conn, batch_id)
        if job is None:
            raise BatchNotFoundError(batch_id)
        return job

    def load_tasks(self, batch_id: str, status: Optional[str] = None) -> list[GenerationTask]:
        with self._lock:
            return get_tasks(self._conn, batch_id, status=status)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
