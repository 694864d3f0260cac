# Copyright (c) Syntropy Systems
"""Tests for the SQLite snapshot store."""

from __future__ import annotations

import csv
import json
import threading
from pathlib import Path

import pytest
from conftest import TEMPERATURE_SPEC, TOP_P_SPEC, ScriptedProvider, always_fatal

from sweeplab.aggregate import summarize
from sweeplab.db import SnapshotStore, find_batch, get_connection, init_db
from sweeplab.errors import BatchNotFoundError, ConfigurationError
from sweeplab.export import export_batch
from sweeplab.models import BatchStatus, TaskStatus

PROMPT = "Describe how solar garden lamps work."


@pytest.fixture
def store(temp_dir: Path):
    store = SnapshotStore(temp_dir / "sweeplab.db")
    yield store
    store.close()


class TestSchema:
    """Tests for database initialization."""

    def test_init_creates_tables(self, temp_dir: Path) -> None:
        """Test the schema creates the batches and tasks tables."""
        db_path = temp_dir / "sweeplab.db"
        init_db(db_path)

        conn = get_connection(db_path)
        try:
            tables = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        finally:
            conn.close()

        assert {"batches", "tasks"} <= tables

    def test_wal_mode(self, temp_dir: Path) -> None:
        """Test connections use WAL journaling."""
        conn = get_connection(temp_dir / "sweeplab.db")
        try:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()
        assert mode == "wal"


class TestSnapshotStore:
    """Tests for persisting scheduler events."""

    def test_batch_round_trip(self, store: SnapshotStore, make_scheduler) -> None:
        """Test a finished batch and its tasks can be loaded back."""
        scheduler = make_scheduler(ScriptedProvider())
        scheduler.subscribe(store.record)
        batch_id = scheduler.create_batch(
            PROMPT, [TEMPERATURE_SPEC, TOP_P_SPEC], iterations=2, name="lamps"
        )
        scheduler.start(batch_id)
        live = scheduler.wait(batch_id, timeout=5.0)

        stored = store.load_batch(batch_id)
        tasks = store.load_tasks(batch_id)

        assert stored.status == BatchStatus.COMPLETED
        assert stored.name == "lamps"
        assert stored.succeeded == live.succeeded == 12
        assert [s.name for s in stored.specs] == ["temperature", "top_p"]
        assert len(tasks) == 12
        assert tasks == scheduler.get_tasks(batch_id)

        from_store = summarize(batch_id, tasks, stored.specs)
        assert from_store == scheduler.get_summary(batch_id)

    def test_stopped_batch_keeps_not_run_tasks(self, store: SnapshotStore, make_scheduler) -> None:
        """Test tasks cut short by stop are stored as not_run."""
        provider = ScriptedProvider()
        provider.gate = threading.Event()
        scheduler = make_scheduler(provider, concurrency=1)
        scheduler.subscribe(store.record)
        batch_id = scheduler.create_batch(PROMPT, [TEMPERATURE_SPEC])
        scheduler.start(batch_id)
        scheduler.stop(batch_id)
        provider.gate.set()

        tasks = store.load_tasks(batch_id)

        assert store.load_batch(batch_id).status == BatchStatus.STOPPED
        assert len(tasks) == 3
        assert all(t.status == TaskStatus.NOT_RUN for t in tasks)

    def test_queued_batch_recorded(self, store: SnapshotStore, make_scheduler) -> None:
        """Test a created batch is stored before it starts."""
        scheduler = make_scheduler(ScriptedProvider())
        scheduler.subscribe(store.record)
        batch_id = scheduler.create_batch(PROMPT, [TEMPERATURE_SPEC])

        batches = store.list_batches()

        assert [b.id for b in batches] == [batch_id]
        assert batches[0].status == BatchStatus.QUEUED
        assert store.load_tasks(batch_id) == []

    def test_filter_by_status(self, store: SnapshotStore, make_scheduler) -> None:
        """Test tasks and batches can be filtered by status."""
        scheduler = make_scheduler(ScriptedProvider(always_fatal))
        scheduler.subscribe(store.record)
        batch_id = scheduler.create_batch(PROMPT, [TEMPERATURE_SPEC])
        scheduler.start(batch_id)
        scheduler.wait(batch_id, timeout=5.0)

        assert len(store.load_tasks(batch_id, status=TaskStatus.FAILED_FATAL.value)) == 3
        assert store.load_tasks(batch_id, status=TaskStatus.SUCCEEDED.value) == []
        assert len(store.list_batches(status="completed")) == 1
        assert store.list_batches(status="running") == []

    def test_load_by_prefix(self, store: SnapshotStore, make_scheduler) -> None:
        """Test a unique id prefix finds the batch."""
        scheduler = make_scheduler(ScriptedProvider())
        scheduler.subscribe(store.record)
        batch_id = scheduler.create_batch(PROMPT, [TEMPERATURE_SPEC])

        assert store.load_batch(batch_id[:6]).id == batch_id

    def test_deleted_batch_removed(self, store: SnapshotStore, make_scheduler) -> None:
        """Test deleting a batch from the scheduler removes its rows."""
        scheduler = make_scheduler(ScriptedProvider())
        scheduler.subscribe(store.record)
        batch_id = scheduler.create_batch(PROMPT, [TEMPERATURE_SPEC])
        scheduler.start(batch_id)
        scheduler.wait(batch_id, timeout=5.0)
        assert len(store.load_tasks(batch_id)) == 3

        scheduler.delete(batch_id)

        with pytest.raises(BatchNotFoundError):
            store.load_batch(batch_id)
        assert store.load_tasks(batch_id) == []

    def test_unknown_batch(self, store: SnapshotStore) -> None:
        """Test loading an unknown batch raises."""
        with pytest.raises(BatchNotFoundError):
            store.load_batch("nope")

    def test_prefix_is_literal(self, store: SnapshotStore, make_scheduler) -> None:
        """Test wildcard characters in a prefix match nothing."""
        scheduler = make_scheduler(ScriptedProvider())
        scheduler.subscribe(store.record)
        scheduler.create_batch(PROMPT, [TEMPERATURE_SPEC])

        conn = get_connection(store.db_path)
        try:
            assert find_batch(conn, "%") is None
            assert find_batch(conn, "") is None
        finally:
            conn.close()


class TestExport:
    """Tests for CSV and JSON export."""

    @pytest.fixture
    def finished(self, store: SnapshotStore, make_scheduler):
        scheduler = make_scheduler(ScriptedProvider())
        scheduler.subscribe(store.record)
        batch_id = scheduler.create_batch(PROMPT, [TEMPERATURE_SPEC], iterations=2)
        scheduler.start(batch_id)
        scheduler.wait(batch_id, timeout=5.0)
        return store.load_batch(batch_id), store.load_tasks(batch_id)

    def test_csv(self, temp_dir: Path, finished) -> None:
        """Test CSV has one row per task with param and score columns."""
        batch, tasks = finished
        output = temp_dir / "results.csv"

        count = export_batch(output, batch, tasks)

        with output.open(newline="") as f:
            rows = list(csv.DictReader(f))
        assert count == 6
        assert len(rows) == 6
        assert rows[0]["param.temperature"] == "0.0"
        assert rows[-1]["param.temperature"] == "1.0"
        assert float(rows[0]["score.overall"]) > 0
        assert rows[0]["status"] == "succeeded"

    def test_json(self, temp_dir: Path, finished) -> None:
        """Test JSON holds the batch, its summary and the tasks."""
        batch, tasks = finished
        output = temp_dir / "results.json"

        export_batch(output, batch, tasks)

        data = json.loads(output.read_text())
        assert data["batch"]["id"] == batch.id
        assert len(data["tasks"]) == 6
        assert data["summary"]["succeeded"] == 6
        assert "temperature" in data["summary"]["correlations"]

    def test_unsupported_format(self, temp_dir: Path, finished) -> None:
        """Test other extensions are rejected."""
        batch, tasks = finished
        with pytest.raises(ConfigurationError):
            export_batch(temp_dir / "results.xlsx", batch, tasks)

