# Copyright (c) Syntropy Systems
"""Bounded-concurrency worker pool for provider calls."""
from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Literal, Optional

from sweeplab import scoring
from sweeplab.errors import (
    ConfigurationError,
    GenerationCancelled,
    ProviderFatalError,
    ProviderTransientError,
)
from sweeplab.models import QualityScore, QualityWeights, TaskStatus, utcnow
from sweeplab.providers import CancellationToken
from sweeplab.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from sweeplab.models import Combination, GenerationTask, TokenUsage
    from sweeplab.providers import GenerationProvider

logger = logging.getLogger(__name__)

EventKind = Literal["started", "retry", "succeeded", "failed"]


@dataclass(frozen=True)
class WorkItem:
    """One attempt of one task, as handed to a worker."""

    key: tuple[str, int, int]
    prompt: str
    combination: Combination
    model: Optional[str] = None
    weights: Optional[QualityWeights] = None
    # Attempts already made before this one
    attempt: int = 0


@dataclass(frozen=True)
class WorkerEvent:
    """Message from a worker back to whoever owns the tasks."""

    kind: EventKind
    key: tuple[str, int, int]
    attempt: int
    timestamp: str
    text: Optional[str] = None
    score: Optional[QualityScore] = None
    usage: Optional[TokenUsage] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class TaskQueue:
    """FIFO of work items with delayed re-entry for retries and a pause gate.

    Retries whose backoff has elapsed are served before fresh items. While
    paused, ``take`` hands out nothing; items stay queued in order.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._ready: deque[WorkItem] = deque()
        self._delayed: list[tuple[float, int, WorkItem]] = []
        self._seq = itertools.count()
        self._paused = False
        self._closed = False

    def put(self, item: WorkItem) -> None:
        """Queue an item for dispatch."""
        with self._cond:
            self._ready.append(item)
            self._cond.notify()

    def put_later(self, item: WorkItem, delay: float) -> None:
        """Queue an item that becomes available after ``delay`` seconds."""
        with self._cond:
            ready_at = time.monotonic() + max(0.0, delay)
            heapq.heappush(self._delayed, (ready_at, next(self._seq), item))
            self._cond.notify()

    def take(self) -> Optional[WorkItem]:
        """Block until an item is available. Returns None once closed."""
        with self._cond:
            while True:
                if self._closed:
                    return None
                timeout = None
                if not self._paused:
                    now = time.monotonic()
                    if self._delayed and self._delayed[0][0] <= now:
                        return heapq.heappop(self._delayed)[2]
                    if self._ready:
                        return self._ready.popleft()
                    if self._delayed:
                        timeout = self._delayed[0][0] - now
                _ = self._cond.wait(timeout=timeout)

    def pause(self) -> None:
        """Stop handing out items."""
        with self._cond:
            self._paused = True

    def resume(self) -> None:
        """Hand out items again."""
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    def close(self) -> None:
        """Wake every waiting worker and refuse further takes."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def paused(self) -> bool:
        with self._cond:
            return self._paused

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)


class WorkerPool:
    """Runs exactly ``concurrency`` worker threads over a shared TaskQueue.

    Workers never touch task records. They report ``started``, ``retry``,
    ``succeeded`` and ``failed`` events on ``events`` in the order they
    happen, and the owner of the tasks applies them.
    """

    provider: GenerationProvider
    concurrency: int
    retry_policy: RetryPolicy
    cancel: CancellationToken
    work_queue: TaskQueue
    events: queue.Queue[Optional[WorkerEvent]]
    _threads: list[threading.Thread]

    def __init__(
        self,
        provider: GenerationProvider,
        concurrency: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancellationToken] = None,
        name: str = "sweeplab",
    ) -> None:
        if concurrency < 1:
            msg = f"concurrency must be a positive integer, got {concurrency}"
            raise ConfigurationError(msg)
        self.provider = provider
        self.concurrency = concurrency
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel = cancel or CancellationToken()
        self.name = name
        self.work_queue = TaskQueue()
        self.events = queue.Queue()
        self._threads = []

    def start(self) -> None:
        """Spawn the worker threads."""
        for index in range(self.concurrency):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def submit(self, item: WorkItem) -> None:
        """Queue a work item."""
        self.work_queue.put(item)

    def shutdown(self, cancel: bool = False) -> None:
        """Stop taking work; with ``cancel`` also abort in-flight calls."""
        if cancel:
            self.cancel.cancel()
        self.work_queue.close()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the worker threads to exit."""
        for thread in self._threads:
            thread.join(timeout=timeout)

    def _emit(self, event: WorkerEvent) -> None:
        self.events.put(event)

    def _worker_loop(self) -> None:
        while not self.cancel.cancelled:
            item = self.work_queue.take()
            if item is None:
                return
            if self.cancel.cancelled:
                return
            self._process(item)

    def _process(self, item: WorkItem) -> None:
        attempt = item.attempt + 1
        self._emit(WorkerEvent("started", item.key, attempt, utcnow()))

        begin = time.monotonic()
        try:
            generation = self.provider.generate(
                item.prompt, item.combination, self.cancel, item.model
            )
        except GenerationCancelled:
            return
        except ProviderTransientError as e:
            if self.cancel.cancelled:
                return
            self._handle_transient(item, attempt, e)
            return
        except ProviderFatalError as e:
            self._emit(WorkerEvent("failed", item.key, attempt, utcnow(), error=str(e)))
            return
        except Exception as e:
            logger.exception("Provider %s crashed on task %s", self.provider.name, item.key)
            self._emit(
                WorkerEvent(
                    "failed", item.key, attempt, utcnow(),
                    error=f"{type(e).__name__}: {e}",
                )
            )
            return
        latency_ms = (time.monotonic() - begin) * 1000.0

        self._emit(
            WorkerEvent(
                "succeeded",
                item.key,
                attempt,
                utcnow(),
                text=generation.text,
                score=self._score(item, generation.text),
                usage=generation.usage,
                latency_ms=latency_ms,
            )
        )

    def _handle_transient(
        self, item: WorkItem, attempt: int, error: ProviderTransientError
    ) -> None:
        if not self.retry_policy.should_retry(attempt):
            self._emit(
                WorkerEvent(
                    "failed", item.key, attempt, utcnow(),
                    error=f"{error} (gave up after {attempt} attempts)",
                )
            )
            return
        delay = self.retry_policy.delay(attempt)
        logger.warning(
            "Task %s attempt %d failed (%s), retrying in %.2fs",
            item.key, attempt, error, delay,
        )
        # The retry event must reach the owner before the next "started" does
        self._emit(WorkerEvent("retry", item.key, attempt, utcnow(), error=str(error)))
        self.work_queue.put_later(replace(item, attempt=attempt), delay)

    def _score(self, item: WorkItem, text: str) -> QualityScore:
        try:
            return scoring.score(item.prompt, text, item.combination, item.weights)
        except Exception:
            logger.exception("Scoring failed for task %s, using zero score", item.key)
            return QualityScore.zero()

    def run(
        self,
        tasks: Iterable[GenerationTask],
        prompt: str,
        model: Optional[str] = None,
        weights: Optional[QualityWeights] = None,
    ) -> Iterator[GenerationTask]:
        """Process tasks to completion, yielding each as it becomes terminal.

        Standalone use of the pool without a scheduler. Yielded tasks are
        updated copies with status ``succeeded`` or ``failed_fatal``.
        """
        pending: dict[tuple[str, int, int], GenerationTask] = {}
        for task in tasks:
            copy = task.model_copy(deep=True)
            pending[copy.key] = copy
            self.submit(
                WorkItem(copy.key, prompt, copy.combination, model, weights, copy.attempt)
            )
        if not pending:
            return

        self.start()
        try:
            while pending:
                event = self.events.get()
                if event is None:
                    break
                task = pending.get(event.key)
                if task is None:
                    continue
                apply_event(task, event)
                if task.is_terminal:
                    del pending[event.key]
                    yield task
        finally:
            self.shutdown(cancel=bool(pending))


def apply_event(task: GenerationTask, event: WorkerEvent) -> TaskStatus:
    """Apply a worker event to a task record and return the previous status."""
    previous = task.status
    task.attempt = event.attempt
    if event.kind == "started":
        task.status = TaskStatus.IN_FLIGHT
        if task.started_at is None:
            task.started_at = event.timestamp
    elif event.kind == "retry":
        task.status = TaskStatus.FAILED_RETRYABLE
        task.error = event.error
    elif event.kind == "succeeded":
        task.status = TaskStatus.SUCCEEDED
        task.result_text = event.text
        task.score = event.score
        task.usage = event.usage
        task.latency_ms = event.latency_ms
        task.error = None
        task.finished_at = event.timestamp
    else:
        task.status = TaskStatus.FAILED_FATAL
        task.error = event.error
        task.finished_at = event.timestamp
    return previous
