# Copyright (c) Syntropy Systems
"""Batch job scheduler: lifecycle state machine and task ownership.

The scheduler is the only writer of batch and task state. Control calls
(start, pause, resume, stop) change batch status under the scheduler lock;
one coordinator thread per running batch applies the events its worker
pool reports. Nothing else mutates a BatchJob or GenerationTask.

State machine::

    queued -> running <-> paused
    running -> completed   (every task terminal)
    running, paused -> failed    (provider preflight rejected the batch)
    running, paused -> stopped

stopped, completed and failed are terminal. Queued and terminal batches
can be deleted.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import TYPE_CHECKING, Callable, Literal, Optional, Union

from sweeplab import grid
from sweeplab.aggregate import summarize
from sweeplab.errors import (
    BatchNotFoundError,
    ConfigurationError,
    ProviderFatalError,
    ProviderTransientError,
    SchedulerStateError,
)
from sweeplab.models import (
    BatchEvent,
    BatchJob,
    BatchStatus,
    GenerationTask,
    ParameterSpec,
    QualityWeights,
    TaskStatus,
    utcnow,
)
from sweeplab.pool import WorkerPool, WorkItem, apply_event
from sweeplab.providers import create_provider
from sweeplab.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from sweeplab.config import SweeplabConfig
    from sweeplab.models import BatchSummary
    from sweeplab.pool import WorkerEvent
    from sweeplab.providers import GenerationProvider

logger = logging.getLogger(__name__)

BatchListener = Callable[[BatchEvent], None]
TaskKey = tuple[int, int]
SpecInput = Union[ParameterSpec, "Mapping[str, float]"]
WeightsInput = Union[QualityWeights, "Mapping[str, float]", None]


class _BatchRunner:
    """Worker pool plus the coordinator thread applying its events."""

    def __init__(self, scheduler: Scheduler, batch_id: str, pool: WorkerPool) -> None:
        self.scheduler = scheduler
        self.batch_id = batch_id
        self.pool = pool
        self._thread = threading.Thread(
            target=self._coordinate,
            name=f"sweeplab-coordinator-{batch_id}",
            daemon=True,
        )

    def launch(self, items: list[WorkItem], paused: bool) -> None:
        for item in items:
            self.pool.submit(item)
        if paused:
            self.pool.work_queue.pause()
        self.pool.start()
        self._thread.start()

    def _coordinate(self) -> None:
        while True:
            event = self.pool.events.get()
            if event is None:
                break
            if self.scheduler._apply(self.batch_id, event):
                break
        self.pool.shutdown()

    def finish(self, cancel: bool) -> None:
        """Shut the pool down and release the coordinator."""
        self.pool.shutdown(cancel=cancel)
        self.pool.events.put(None)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self.pool.join(timeout=timeout)


class Scheduler:
    """Owns every batch: creation, lifecycle transitions, progress and results.

    Args:
        provider: Generation provider shared by all batches
        concurrency: Worker threads (and maximum in-flight calls) per batch
        retry_policy: Backoff policy for transient provider errors
        weights: Default metric weights for batches that do not set their own

    """

    provider: GenerationProvider
    concurrency: int
    retry_policy: RetryPolicy
    default_weights: QualityWeights

    def __init__(
        self,
        provider: GenerationProvider,
        concurrency: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        weights: WeightsInput = None,
    ) -> None:
        if concurrency < 1:
            msg = f"concurrency must be a positive integer, got {concurrency}"
            raise ConfigurationError(msg)
        self.provider = provider
        self.concurrency = concurrency
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_weights = _coerce_weights(weights) or QualityWeights()

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._jobs: dict[str, BatchJob] = {}
        self._tasks: dict[str, dict[TaskKey, GenerationTask]] = {}
        self._runners: dict[str, _BatchRunner] = {}
        self._listeners: list[BatchListener] = []

    @classmethod
    def from_config(
        cls, config: SweeplabConfig, provider: Optional[GenerationProvider] = None
    ) -> Scheduler:
        """Build a scheduler from loaded configuration.

        The provider named in the config is created unless one is passed in.
        """
        config.validate()
        if provider is None:
            provider = create_provider(config)
        return cls(
            provider=provider,
            concurrency=config.concurrency,
            retry_policy=config.retry_policy(),
            weights=config.quality_weights(),
        )

    # --- Events ---

    def subscribe(self, listener: BatchListener) -> Callable[[], None]:
        """Register a listener for batch and task events.

        Listeners run synchronously while the scheduler lock is held, in the
        order state changed. They must be quick and must not wait on other
        threads. Returns a function that unsubscribes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(
        self,
        job: BatchJob,
        task: Optional[GenerationTask] = None,
        deleted: bool = False,
    ) -> None:
        # Caller holds the lock
        self._changed.notify_all()
        if not self._listeners:
            return
        kind: Literal["batch", "task", "deleted"]
        if deleted:
            kind = "deleted"
        else:
            kind = "task" if task is not None else "batch"
        event = BatchEvent(
            kind=kind,
            batch=job.model_copy(deep=True),
            task=task.model_copy(deep=True) if task is not None else None,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Batch event listener %r failed", listener)

    # --- Creation ---

    def create_batch(
        self,
        prompt: str,
        specs: Sequence[SpecInput],
        iterations: int = 1,
        name: Optional[str] = None,
        model: Optional[str] = None,
        weights: WeightsInput = None,
    ) -> str:
        """Validate a sweep and register it as a queued batch.

        Raises ConfigurationError for an empty prompt, a non-positive
        iteration count, invalid specs or invalid weights. Nothing is
        created in that case.
        """
        if not prompt or not prompt.strip():
            msg = "Prompt must not be empty"
            raise ConfigurationError(msg)
        if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 1:
            msg = f"iterations must be a positive integer, got {iterations!r}"
            raise ConfigurationError(msg)

        parsed_specs = [_coerce_spec(spec) for spec in specs]
        grid.validate_specs(parsed_specs)
        batch_weights = _coerce_weights(weights) or self.default_weights

        batch_id = uuid.uuid4().hex[:12]
        job = BatchJob(
            id=batch_id,
            name=name or f"sweep-{batch_id[:6]}",
            prompt=prompt,
            model=model,
            specs=parsed_specs,
            iterations_per_combination=iterations,
            weights=batch_weights,
            created_at=utcnow(),
            total_tasks=grid.grid_size(parsed_specs) * iterations,
        )
        with self._lock:
            self._jobs[batch_id] = job
            logger.info(
                "Created batch %s (%s): %d tasks", batch_id, job.name, job.total_tasks
            )
            self._emit(job)
        return batch_id

    # --- Lifecycle ---

    def start(self, batch_id: str) -> BatchJob:
        """Expand the grid, create every task and begin dispatching.

        Only valid from ``queued``. If the provider's preflight check raises
        ProviderFatalError, or crashes outright, the batch moves to ``failed``
        before any task ran.
        """
        with self._lock:
            job = self._require(batch_id)
            self._check_transition(job, "start", BatchStatus.QUEUED)

            combinations = grid.expand(job.specs)
            tasks: dict[TaskKey, GenerationTask] = {}
            for combination in combinations:
                for iteration in range(job.iterations_per_combination):
                    tasks[(combination.index, iteration)] = GenerationTask(
                        batch_id=batch_id,
                        combination=combination,
                        iteration_index=iteration,
                    )
            self._tasks[batch_id] = tasks
            job.total_tasks = len(tasks)
            job.status = BatchStatus.RUNNING
            job.started_at = utcnow()
            logger.info("Started batch %s with %d tasks", batch_id, len(tasks))
            self._emit(job)

        try:
            self.provider.check(job.model)
        except ProviderFatalError as e:
            logger.error("Batch %s failed preflight: %s", batch_id, e)
            return self._fail(job, str(e))
        except ProviderTransientError as e:
            logger.warning("Preflight check for batch %s inconclusive: %s", batch_id, e)
        except Exception as e:
            logger.exception("Preflight check for batch %s crashed", batch_id)
            return self._fail(job, f"Preflight check crashed: {type(e).__name__}: {e}")

        with self._lock:
            if job.status in (BatchStatus.RUNNING, BatchStatus.PAUSED):
                self._launch(job)
            return job.model_copy(deep=True)

    def _fail(self, job: BatchJob, error: str) -> BatchJob:
        with self._lock:
            if job.status in (BatchStatus.RUNNING, BatchStatus.PAUSED):
                job.status = BatchStatus.FAILED
                job.error = error
                job.ended_at = utcnow()
                self._mark_not_run(job)
                self._emit(job)
            return job.model_copy(deep=True)

    def _launch(self, job: BatchJob) -> None:
        # Caller holds the lock
        pool = WorkerPool(
            provider=self.provider,
            concurrency=self.concurrency,
            retry_policy=self.retry_policy,
            name=f"sweeplab-{job.id}",
        )
        runner = _BatchRunner(self, job.id, pool)
        self._runners[job.id] = runner

        items = [
            WorkItem(
                key=task.key,
                prompt=job.prompt,
                combination=task.combination,
                model=job.model,
                weights=job.weights,
            )
            for task in self._tasks[job.id].values()
        ]
        if not items:
            job.status = BatchStatus.COMPLETED
            job.progress = 1.0
            job.ended_at = utcnow()
            self._emit(job)
            return
        runner.launch(items, paused=job.status == BatchStatus.PAUSED)

    def pause(self, batch_id: str) -> BatchJob:
        """Stop dispatching new tasks. In-flight calls finish normally."""
        with self._lock:
            job = self._require(batch_id)
            self._check_transition(job, "pause", BatchStatus.RUNNING)
            job.status = BatchStatus.PAUSED
            runner = self._runners.get(batch_id)
            if runner is not None:
                runner.pool.work_queue.pause()
            logger.info("Paused batch %s", batch_id)
            self._emit(job)
            return job.model_copy(deep=True)

    def resume(self, batch_id: str) -> BatchJob:
        """Re-enter ``running`` and dispatch the remaining pending tasks."""
        with self._lock:
            job = self._require(batch_id)
            self._check_transition(job, "resume", BatchStatus.PAUSED)
            job.status = BatchStatus.RUNNING
            logger.info("Resumed batch %s", batch_id)
            runner = self._runners.get(batch_id)
            if self._all_terminal(job):
                self._complete(job)
            elif runner is not None:
                runner.pool.work_queue.resume()
            self._emit(job)
            return job.model_copy(deep=True)

    def stop(self, batch_id: str) -> BatchJob:
        """Cancel in-flight work and freeze the batch as ``stopped``.

        Unfinished tasks become ``not_run``. Once this returns no task of
        the batch changes state again.
        """
        with self._lock:
            job = self._require(batch_id)
            self._check_transition(job, "stop", BatchStatus.RUNNING, BatchStatus.PAUSED)
            job.status = BatchStatus.STOPPED
            job.ended_at = utcnow()
            self._mark_not_run(job)
            runner = self._runners.get(batch_id)
            if runner is not None:
                runner.finish(cancel=True)
            logger.info(
                "Stopped batch %s: %d succeeded, %d failed, %d not run",
                batch_id, job.succeeded, job.failed, job.not_run,
            )
            self._emit(job)
            return job.model_copy(deep=True)

    def delete(self, batch_id: str, timeout: Optional[float] = 1.0) -> BatchJob:
        """Forget a batch that is queued or finished, along with its tasks.

        Running and paused batches must be stopped first. Listeners receive a
        ``deleted`` event. Returns the last snapshot of the batch.
        """
        with self._lock:
            job = self._require(batch_id)
            self._check_transition(
                job,
                "delete",
                BatchStatus.QUEUED,
                BatchStatus.STOPPED,
                BatchStatus.COMPLETED,
                BatchStatus.FAILED,
            )
            del self._jobs[batch_id]
            _ = self._tasks.pop(batch_id, None)
            runner = self._runners.pop(batch_id, None)
            logger.info("Deleted batch %s", batch_id)
            self._emit(job, deleted=True)
            snapshot = job.model_copy(deep=True)
        if runner is not None:
            runner.join(timeout=timeout)
        return snapshot

    def _check_transition(
        self, job: BatchJob, operation: str, *allowed: BatchStatus
    ) -> None:
        if job.status not in allowed:
            raise SchedulerStateError(job.id, operation, job.status.value)

    # --- Event application (coordinator thread) ---

    def _apply(self, batch_id: str, event: WorkerEvent) -> bool:
        """Apply one worker event. Returns True when the coordinator should exit."""
        with self._lock:
            job = self._jobs.get(batch_id)
            if job is None or job.is_terminal:
                return True
            task = self._tasks[batch_id].get((event.key[1], event.key[2]))
            if task is None or task.is_terminal:
                return False

            previous = apply_event(task, event)
            self._count(job, previous, task.status)
            if event.kind == "succeeded" and task.score is not None:
                logger.debug(
                    "Task %s succeeded with overall %.3f", task.key, task.score.overall
                )
            elif event.kind == "failed":
                logger.warning("Task %s failed: %s", task.key, task.error)
            self._emit(job, task)

            if job.status == BatchStatus.RUNNING and self._all_terminal(job):
                self._complete(job)
                self._emit(job)
                return True
            return False

    def _count(self, job: BatchJob, previous: TaskStatus, current: TaskStatus) -> None:
        # Caller holds the lock
        for status, delta in ((previous, -1), (current, 1)):
            if status == TaskStatus.IN_FLIGHT:
                job.in_flight += delta
            elif status == TaskStatus.SUCCEEDED:
                job.succeeded += delta
            elif status == TaskStatus.FAILED_FATAL:
                job.failed += delta
            elif status == TaskStatus.NOT_RUN:
                job.not_run += delta
        if job.total_tasks:
            job.progress = (job.succeeded + job.failed) / job.total_tasks

    def _all_terminal(self, job: BatchJob) -> bool:
        return job.succeeded + job.failed + job.not_run >= job.total_tasks

    def _complete(self, job: BatchJob) -> None:
        # Caller holds the lock
        job.status = BatchStatus.COMPLETED
        job.ended_at = utcnow()
        runner = self._runners.get(job.id)
        if runner is not None:
            runner.finish(cancel=False)
        logger.info(
            "Completed batch %s: %d succeeded, %d failed",
            job.id, job.succeeded, job.failed,
        )

    def _mark_not_run(self, job: BatchJob) -> None:
        # Caller holds the lock
        for task in self._tasks.get(job.id, {}).values():
            if not task.is_terminal:
                previous = task.status
                task.status = TaskStatus.NOT_RUN
                task.finished_at = job.ended_at
                self._count(job, previous, task.status)
                self._emit(job, task)

    # --- Queries ---

    def _require(self, batch_id: str) -> BatchJob:
        job = self._jobs.get(batch_id)
        if job is None:
            raise BatchNotFoundError(batch_id)
        return job

    def get_progress(self, batch_id: str) -> BatchJob:
        """Snapshot of a batch's status and counters."""
        with self._lock:
            return self._require(batch_id).model_copy(deep=True)

    def list_batches(self) -> list[BatchJob]:
        """Snapshots of every known batch, oldest first."""
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def get_tasks(
        self, batch_id: str, status: Optional[TaskStatus] = None
    ) -> list[GenerationTask]:
        """Snapshot of a batch's tasks in combination-then-iteration order."""
        with self._lock:
            _ = self._require(batch_id)
            tasks = self._tasks.get(batch_id, {}).values()
            return [
                task.model_copy(deep=True)
                for task in tasks
                if status is None or task.status == status
            ]

    def get_summary(self, batch_id: str) -> BatchSummary:
        """Summary over the tasks that have succeeded so far."""
        with self._lock:
            job = self._require(batch_id)
            tasks = [t.model_copy(deep=True) for t in self._tasks.get(batch_id, {}).values()]
            specs = list(job.specs)
        return summarize(batch_id, tasks, specs)

    def wait(self, batch_id: str, timeout: Optional[float] = None) -> BatchJob:
        """Block until the batch is terminal or ``timeout`` seconds pass."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            job = self._require(batch_id)
            while not job.is_terminal:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                _ = self._changed.wait(timeout=remaining)
            return job.model_copy(deep=True)

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Stop every active batch and wait for their threads."""
        with self._lock:
            active = [
                job.id for job in self._jobs.values()
                if job.status in (BatchStatus.RUNNING, BatchStatus.PAUSED)
            ]
        for batch_id in active:
            try:
                _ = self.stop(batch_id)
            except SchedulerStateError:
                # Finished on its own in the meantime
                continue
        with self._lock:
            runners = list(self._runners.values())
        for runner in runners:
            runner.join(timeout=timeout)


def _coerce_spec(spec: SpecInput) -> ParameterSpec:
    if isinstance(spec, ParameterSpec):
        return spec
    try:
        return ParameterSpec.model_validate(spec)
    except ValueError as e:
        msg = f"Invalid parameter spec {spec!r}: {e}"
        raise ConfigurationError(msg) from e


def _coerce_weights(weights: WeightsInput) -> Optional[QualityWeights]:
    if weights is None:
        return None
    if isinstance(weights, QualityWeights):
        weights.validate_sum()
        return weights
    return QualityWeights.from_mapping(weights)
