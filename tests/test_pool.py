# Copyright (c) Syntropy Systems
"""Tests for the worker pool, its task queue and the retry policy."""

from __future__ import annotations

import threading
import time

import pytest
from conftest import SAMPLE_TEXT, ScriptedProvider, always_fatal, fail_then_succeed

from sweeplab import grid
from sweeplab.errors import ConfigurationError
from sweeplab.models import Combination, GenerationTask, ParameterSpec, TaskStatus
from sweeplab.pool import TaskQueue, WorkerEvent, WorkerPool, WorkItem, apply_event
from sweeplab.retry import RetryPolicy


def make_tasks(count: int, batch_id: str = "b1") -> list[GenerationTask]:
    spec = ParameterSpec(name="max_tokens", min=1, max=count, step=1)
    return [
        GenerationTask(batch_id=batch_id, combination=combination, iteration_index=0)
        for combination in grid.expand([spec])
    ]


def item(index: int) -> WorkItem:
    return WorkItem(("b1", index, 0), "prompt", Combination(index=index))


class TestTaskQueue:
    """Tests for the dispatch queue."""

    def test_fifo(self) -> None:
        """Test items come out in the order they went in."""
        queue = TaskQueue()
        for i in range(3):
            queue.put(item(i))
        assert [queue.take().key[1] for _ in range(3)] == [0, 1, 2]

    def test_close_releases_waiters(self) -> None:
        """Test a blocked take returns None once the queue closes."""
        queue = TaskQueue()
        results: list[object] = []
        thread = threading.Thread(target=lambda: results.append(queue.take()))
        thread.start()
        time.sleep(0.05)
        queue.close()
        thread.join(timeout=1.0)
        assert results == [None]

    def test_pause_holds_items(self) -> None:
        """Test nothing is handed out while paused."""
        queue = TaskQueue()
        queue.put(item(0))
        queue.pause()
        results: list[WorkItem | None] = []
        thread = threading.Thread(target=lambda: results.append(queue.take()))
        thread.start()
        time.sleep(0.05)
        assert results == []
        queue.resume()
        thread.join(timeout=1.0)
        assert results[0] is not None
        assert results[0].key == ("b1", 0, 0)

    def test_delayed_item_waits(self) -> None:
        """Test a retry is only available after its delay."""
        queue = TaskQueue()
        queue.put_later(item(0), 0.1)
        start = time.monotonic()
        taken = queue.take()
        assert taken is not None
        assert time.monotonic() - start >= 0.09

    def test_ready_retry_served_first(self) -> None:
        """Test an elapsed retry goes before fresh items."""
        queue = TaskQueue()
        queue.put(item(1))
        queue.put_later(item(0), 0.0)
        time.sleep(0.01)
        assert queue.take().key[1] == 0
        assert len(queue) == 1


class TestRetryPolicy:
    """Tests for backoff computation."""

    def test_exponential_backoff_with_cap(self) -> None:
        """Test delays double per attempt and stop at the cap."""
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert [policy.delay(a) for a in range(1, 5)] == [2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounded(self) -> None:
        """Test jitter adds at most its configured amount."""
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.5)
        for _ in range(20):
            assert 2.0 <= policy.delay(1) <= 2.5

    def test_should_retry(self) -> None:
        """Test attempts are bounded by max_attempts."""
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_invalid_policy(self) -> None:
        """Test zero attempts or negative delays are rejected."""
        with pytest.raises(ConfigurationError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ConfigurationError):
            RetryPolicy(base_delay=-1.0)


class TestWorkerPool:
    """Tests for running tasks through the pool."""

    def test_all_succeed(self) -> None:
        """Test every task ends succeeded with a score and usage."""
        pool = WorkerPool(ScriptedProvider(), concurrency=3, retry_policy=RetryPolicy.no_delay())
        done = list(pool.run(make_tasks(5), "Describe solar lamps."))

        assert len(done) == 5
        assert all(t.status == TaskStatus.SUCCEEDED for t in done)
        assert all(t.result_text == SAMPLE_TEXT for t in done)
        assert all(t.score is not None and t.score.overall > 0 for t in done)
        assert all(t.usage is not None and t.usage.total_tokens == 30 for t in done)
        assert all(t.attempt == 1 for t in done)

    def test_transient_errors_retried(self) -> None:
        """Test a task succeeds after transient failures within the limit."""
        provider = ScriptedProvider(fail_then_succeed(2))
        pool = WorkerPool(provider, concurrency=2, retry_policy=RetryPolicy.no_delay(3))
        done = list(pool.run(make_tasks(2), "prompt"))

        assert all(t.status == TaskStatus.SUCCEEDED for t in done)
        assert all(t.attempt == 3 for t in done)
        assert provider.total_calls == 6

    def test_retries_exhausted(self) -> None:
        """Test a task fails once max_attempts transient errors happened."""
        provider = ScriptedProvider(fail_then_succeed(10))
        pool = WorkerPool(provider, concurrency=2, retry_policy=RetryPolicy.no_delay(3))
        done = list(pool.run(make_tasks(1), "prompt"))

        assert done[0].status == TaskStatus.FAILED_FATAL
        assert done[0].attempt == 3
        assert "gave up after 3 attempts" in (done[0].error or "")
        assert provider.total_calls == 3

    def test_fatal_not_retried(self) -> None:
        """Test fatal errors fail the task on the first attempt."""
        provider = ScriptedProvider(always_fatal)
        pool = WorkerPool(provider, concurrency=2, retry_policy=RetryPolicy.no_delay(5))
        done = list(pool.run(make_tasks(3), "prompt"))

        assert all(t.status == TaskStatus.FAILED_FATAL for t in done)
        assert provider.total_calls == 3

    def test_unexpected_exception_fails_task(self) -> None:
        """Test a crashing provider fails the task instead of the worker."""

        def crash(combination: Combination, call: int) -> str:
            msg = "boom"
            raise RuntimeError(msg)

        pool = WorkerPool(ScriptedProvider(crash), concurrency=1)
        done = list(pool.run(make_tasks(2), "prompt"))

        assert [t.status for t in done] == [TaskStatus.FAILED_FATAL] * 2
        assert "RuntimeError: boom" in (done[0].error or "")

    def test_concurrency_bound(self) -> None:
        """Test no more than ``concurrency`` calls are in flight at once."""
        provider = ScriptedProvider(delay=0.02)
        pool = WorkerPool(provider, concurrency=3, retry_policy=RetryPolicy.no_delay())
        done = list(pool.run(make_tasks(12), "prompt"))

        assert len(done) == 12
        assert provider.max_active <= 3
        assert provider.max_active >= 2

    def test_invalid_concurrency(self) -> None:
        """Test a pool needs at least one worker."""
        with pytest.raises(ConfigurationError):
            WorkerPool(ScriptedProvider(), concurrency=0)


class TestApplyEvent:
    """Tests for applying worker events to task records."""

    def test_lifecycle(self) -> None:
        """Test started, retry and succeeded events move the task forward."""
        task = make_tasks(1)[0]

        previous = apply_event(task, WorkerEvent("started", task.key, 1, "t1"))
        assert previous == TaskStatus.PENDING
        assert task.status == TaskStatus.IN_FLIGHT
        assert task.started_at == "t1"

        apply_event(task, WorkerEvent("retry", task.key, 1, "t2", error="429"))
        assert task.status == TaskStatus.FAILED_RETRYABLE
        assert task.error == "429"

        apply_event(task, WorkerEvent("started", task.key, 2, "t3"))
        assert task.started_at == "t1"

        apply_event(task, WorkerEvent("succeeded", task.key, 2, "t4", text="ok"))
        assert task.status == TaskStatus.SUCCEEDED
        assert task.attempt == 2
        assert task.error is None
        assert task.finished_at == "t4"
