# Copyright (c) Syntropy Systems
"""Tests for the HTTP API."""

from __future__ import annotations

import threading
import time
from collections.abc import Generator
from pathlib import Path

import pytest
from conftest import TEMPERATURE_SPEC, TOP_P_SPEC, ScriptedProvider
from fastapi.testclient import TestClient

from sweeplab.db import SnapshotStore
from sweeplab.retry import RetryPolicy
from sweeplab.scheduler import Scheduler
from sweeplab.server.app import create_app

PROMPT = "Describe how solar garden lamps work."


def wait_for_status(client: TestClient, batch_id: str, status: str) -> dict:
    deadline = time.monotonic() + 5.0
    while True:
        batch = client.get(f"/batches/{batch_id}").json()["batch"]
        if batch["status"] == status:
            return batch
        if time.monotonic() > deadline:
            msg = f"batch never reached {status}, last {batch['status']}"
            raise AssertionError(msg)
        time.sleep(0.01)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def client(provider: ScriptedProvider) -> Generator[TestClient, None, None]:
    """Create a test client around a scheduler with a scripted provider."""
    scheduler = Scheduler(provider, concurrency=2, retry_policy=RetryPolicy.no_delay())
    with TestClient(create_app(scheduler=scheduler)) as test_client:
        yield test_client


class TestBatchLifecycle:
    """Tests for creating and driving batches over HTTP."""

    def test_health(self, client: TestClient) -> None:
        """Test health check endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "provider": "scripted", "batches": 0}

    def test_create_batch(self, client: TestClient) -> None:
        """Test a created batch is queued with its task count."""
        response = client.post(
            "/batches",
            json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC, TOP_P_SPEC], "iterations": 2},
        )

        assert response.status_code == 201
        batch = response.json()["batch"]
        assert batch["status"] == "queued"
        assert batch["total_tasks"] == 12

        listing = client.get("/batches").json()
        assert listing["count"] == 1
        assert listing["batches"][0]["id"] == batch["id"]

    def test_run_to_completion(self, client: TestClient) -> None:
        """Test a started batch completes and exposes tasks and summary."""
        batch_id = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC]}
        ).json()["batch"]["id"]

        response = client.post(f"/batches/{batch_id}/start")
        assert response.status_code == 200
        batch = wait_for_status(client, batch_id, "completed")
        assert batch["succeeded"] == 3
        assert batch["progress"] == 1.0

        tasks = client.get(f"/batches/{batch_id}/tasks").json()
        assert tasks["count"] == 3
        assert all(t["status"] == "succeeded" for t in tasks["tasks"])
        assert client.get(
            f"/batches/{batch_id}/tasks", params={"status": "failed_fatal"}
        ).json()["count"] == 0

        summary = client.get(f"/batches/{batch_id}/summary").json()
        assert summary["succeeded"] == 3
        assert summary["best"] is not None
        assert "temperature" in summary["correlations"]

    def test_create_and_start(self, client: TestClient) -> None:
        """Test start=true starts the batch right away."""
        response = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC], "start": True}
        )

        assert response.status_code == 201
        assert response.json()["batch"]["status"] in ("running", "completed")

    def test_summary_before_start(self, client: TestClient) -> None:
        """Test the summary of an idle batch is empty, not an error."""
        batch_id = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC]}
        ).json()["batch"]["id"]

        summary = client.get(f"/batches/{batch_id}/summary").json()

        assert summary["best"] is None
        assert summary["succeeded"] == 0


class TestPauseStop:
    """Tests for pause, resume and stop over HTTP."""

    @pytest.fixture
    def provider(self) -> ScriptedProvider:
        provider = ScriptedProvider()
        provider.gate = threading.Event()
        return provider

    def test_pause_resume_stop(self, client: TestClient, provider: ScriptedProvider) -> None:
        """Test the control endpoints move the batch through its states."""
        batch_id = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC], "start": True}
        ).json()["batch"]["id"]

        assert client.post(f"/batches/{batch_id}/pause").json()["batch"]["status"] == "paused"
        assert client.post(f"/batches/{batch_id}/resume").json()["batch"]["status"] == "running"

        stopped = client.post(f"/batches/{batch_id}/stop").json()["batch"]
        assert stopped["status"] == "stopped"
        assert stopped["not_run"] == 3


class TestDeleteAndExport:
    """Tests for deleting and exporting batches."""

    def _completed_batch(self, client: TestClient) -> str:
        batch_id = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC], "start": True}
        ).json()["batch"]["id"]
        wait_for_status(client, batch_id, "completed")
        return batch_id

    def test_delete_finished_batch(self, client: TestClient) -> None:
        """Test a completed batch can be deleted and is then gone."""
        batch_id = self._completed_batch(client)

        response = client.delete(f"/batches/{batch_id}")

        assert response.status_code == 200
        assert response.json()["batch"]["id"] == batch_id
        assert client.get(f"/batches/{batch_id}").status_code == 404
        assert client.get("/batches").json()["count"] == 0

    def test_delete_queued_batch(self, client: TestClient) -> None:
        """Test a batch that never started can be deleted."""
        batch_id = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC]}
        ).json()["batch"]["id"]

        assert client.delete(f"/batches/{batch_id}").status_code == 200
        assert client.delete(f"/batches/{batch_id}").status_code == 404

    def test_export_csv(self, client: TestClient) -> None:
        """Test CSV export has a header and one row per task."""
        batch_id = self._completed_batch(client)

        response = client.get(f"/batches/{batch_id}/export", params={"format": "csv"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert f"sweep-{batch_id}.csv" in response.headers["content-disposition"]
        lines = response.text.strip().splitlines()
        assert len(lines) == 4
        assert "param.temperature" in lines[0]
        assert "score.overall" in lines[0]

    def test_export_json(self, client: TestClient) -> None:
        """Test JSON export holds the batch, summary and tasks."""
        batch_id = self._completed_batch(client)

        data = client.get(f"/batches/{batch_id}/export").json()

        assert data["batch"]["id"] == batch_id
        assert data["summary"]["succeeded"] == 3
        assert len(data["tasks"]) == 3

    def test_export_unknown_format_is_422(self, client: TestClient) -> None:
        """Test only csv and json are accepted."""
        batch_id = self._completed_batch(client)

        response = client.get(f"/batches/{batch_id}/export", params={"format": "xml"})

        assert response.status_code == 422

    def test_export_unknown_batch_is_404(self, client: TestClient) -> None:
        """Test exporting a missing batch."""
        assert client.get("/batches/missing/export").status_code == 404


class TestDeleteRunning:
    """Tests for deleting a batch that is still active."""

    @pytest.fixture
    def provider(self) -> ScriptedProvider:
        provider = ScriptedProvider()
        provider.gate = threading.Event()
        return provider

    def test_delete_running_is_409(self, client: TestClient) -> None:
        """Test a running batch must be stopped before deletion."""
        batch_id = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC], "start": True}
        ).json()["batch"]["id"]

        response = client.delete(f"/batches/{batch_id}")
        assert response.status_code == 409
        assert response.json()["error_code"] == "invalid_transition"

        client.post(f"/batches/{batch_id}/stop")
        assert client.delete(f"/batches/{batch_id}").status_code == 200


class TestErrors:
    """Tests for error status codes."""

    def test_invalid_spec_is_422(self, client: TestClient) -> None:
        """Test a zero step is rejected as invalid configuration."""
        spec = dict(TEMPERATURE_SPEC, step=0)
        response = client.post("/batches", json={"prompt": PROMPT, "specs": [spec]})

        assert response.status_code == 422
        assert response.json()["error_code"] == "invalid_configuration"

    def test_missing_prompt_is_422(self, client: TestClient) -> None:
        """Test request validation errors."""
        response = client.post("/batches", json={"specs": []})

        assert response.status_code == 422

    def test_invalid_weights_is_422(self, client: TestClient) -> None:
        """Test weights that do not sum to one are rejected."""
        response = client.post(
            "/batches", json={"prompt": PROMPT, "weights": {"coherence": 0.3}}
        )

        assert response.status_code == 422

    def test_invalid_transition_is_409(self, client: TestClient) -> None:
        """Test pausing a queued batch conflicts."""
        batch_id = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC]}
        ).json()["batch"]["id"]

        response = client.post(f"/batches/{batch_id}/pause")

        assert response.status_code == 409
        assert response.json()["error_code"] == "invalid_transition"
        assert "queued" in response.json()["detail"]

    def test_unknown_batch_is_404(self, client: TestClient) -> None:
        """Test unknown batch ids."""
        assert client.get("/batches/missing").status_code == 404
        assert client.post("/batches/missing/start").status_code == 404
        assert client.get("/batches/missing/summary").status_code == 404


def test_batches_saved_to_project(temp_dir: Path) -> None:
    """Test a server with a project directory records batches."""
    project_dir = temp_dir / ".sweeplab"
    project_dir.mkdir()
    scheduler = Scheduler(ScriptedProvider(), concurrency=2, retry_policy=RetryPolicy.no_delay())

    with TestClient(create_app(scheduler=scheduler, project_dir=project_dir)) as client:
        batch_id = client.post(
            "/batches", json={"prompt": PROMPT, "specs": [TEMPERATURE_SPEC], "start": True}
        ).json()["batch"]["id"]
        wait_for_status(client, batch_id, "completed")

    store = SnapshotStore(project_dir / "sweeplab.db")
    try:
        assert store.load_batch(batch_id).succeeded == 3
    finally:
        store.close()
