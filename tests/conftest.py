# Copyright (c) Syntropy Systems
"""Pytest fixtures for sweeplab tests."""

from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Optional

import pytest

from sweeplab.errors import ProviderFatalError, ProviderTransientError
from sweeplab.models import Combination, TokenUsage
from sweeplab.providers import CancellationToken, Generation, GenerationProvider
from sweeplab.retry import RetryPolicy
from sweeplab.scheduler import Scheduler

# Wide console so rich tables are not truncated in CLI output
os.environ.setdefault("COLUMNS", "200")

# Store original cwd at module load time
_original_cwd = Path.cwd()

SAMPLE_TEXT = (
    "Solar lamps store daylight in a small battery. "
    "At night the battery powers a bright LED for up to 8 hours. "
    "The lamp needs no wiring and works in any sunny garden."
)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sweeplab_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary sweeplab project directory."""
    from sweeplab.db import init_db

    project_dir = temp_dir / ".sweeplab"
    project_dir.mkdir()
    (project_dir / "config.yaml").write_text("provider: mock\nmock_latency: [0, 0]\n")
    init_db(project_dir / "sweeplab.db")

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def outside_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Change into an empty directory that is not a sweeplab project."""
    os.chdir(temp_dir)
    yield temp_dir
    os.chdir(_original_cwd)


class ScriptedProvider(GenerationProvider):
    """Provider whose behaviour per call is decided by a callback.

    ``script(combination, call_number)`` returns the text to produce, or
    raises a provider error. Calls are counted per combination index.
    """

    name = "scripted"

    def __init__(
        self,
        script: Optional[Callable[[Combination, int], str]] = None,
        delay: float = 0.0,
        check_error: Optional[Exception] = None,
    ) -> None:
        self.script = script or (lambda combination, call: SAMPLE_TEXT)
        self.delay = delay
        self.check_error = check_error
        self.calls: dict[int, int] = {}
        self.active = 0
        self.max_active = 0
        self.total_calls = 0
        self._lock = threading.Lock()
        self.gate: Optional[threading.Event] = None

    def check(self, model: Optional[str] = None) -> None:
        if self.check_error is not None:
            raise self.check_error

    def generate(
        self,
        prompt: str,
        combination: Combination,
        cancel: CancellationToken,
        model: Optional[str] = None,
    ) -> Generation:
        with self._lock:
            call = self.calls.get(combination.index, 0)
            self.calls[combination.index] = call + 1
            self.total_calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                while not self.gate.wait(0.01):
                    cancel.raise_if_cancelled()
            if self.delay:
                _ = cancel.wait(self.delay)
            cancel.raise_if_cancelled()
            text = self.script(combination, call)
        finally:
            with self._lock:
                self.active -= 1
        return Generation(
            text=text,
            usage=TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30),
        )


def always_fatal(combination: Combination, call: int) -> str:
    msg = "invalid request"
    raise ProviderFatalError(msg)


def fail_then_succeed(failures: int) -> Callable[[Combination, int], str]:
    """Script raising a transient error for the first ``failures`` calls."""

    def script(combination: Combination, call: int) -> str:
        if call < failures:
            msg = "rate limited"
            raise ProviderTransientError(msg)
        return SAMPLE_TEXT

    return script


@pytest.fixture
def scripted_provider() -> ScriptedProvider:
    """Provider that always returns the sample text."""
    return ScriptedProvider()


@pytest.fixture
def make_scheduler() -> Generator[Callable[..., Scheduler], None, None]:
    """Factory for schedulers that are shut down after the test."""
    created: list[Scheduler] = []

    def factory(
        provider: GenerationProvider,
        concurrency: int = 2,
        max_attempts: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Scheduler:
        scheduler = Scheduler(
            provider=provider,
            concurrency=concurrency,
            retry_policy=retry_policy or RetryPolicy.no_delay(max_attempts),
        )
        created.append(scheduler)
        return scheduler

    yield factory

    for scheduler in created:
        scheduler.shutdown(timeout=2.0)


TEMPERATURE_SPEC = {"name": "temperature", "min": 0.0, "max": 1.0, "step": 0.5}
TOP_P_SPEC = {"name": "top_p", "min": 0.5, "max": 1.0, "step": 0.5}
