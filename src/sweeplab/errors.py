# Copyright (c) Syntropy Systems
"""Exception hierarchy for sweeplab."""
from __future__ import annotations


class SweeplabError(Exception):
    """Base class for all sweeplab errors."""


class ConfigurationError(SweeplabError, ValueError):
    """Invalid parameter spec, weight vector or config value.

    Raised before any task is created; the caller fixes the input and retries.
    """


class SchedulerStateError(SweeplabError):
    """A lifecycle operation was attempted from a state that does not allow it."""

    def __init__(self, batch_id: str, operation: str, status: str) -> None:
        self.batch_id = batch_id
        self.operation = operation
        self.status = status
        super().__init__(
            f"Cannot {operation} batch {batch_id}: batch is {status}"
        )


class BatchNotFoundError(SweeplabError, KeyError):
    """No batch with the given id is known to the scheduler or store."""

    def __init__(self, batch_id: str) -> None:
        self.batch_id = batch_id
        super().__init__(batch_id)

    def __str__(self) -> str:
        return f"Batch {self.batch_id} not found"


class ProviderError(SweeplabError):
    """Error raised by a generation provider."""

    retryable: bool = False


class ProviderTransientError(ProviderError):
    """Rate limit, timeout or network failure. Worth retrying."""

    retryable = True


class ProviderFatalError(ProviderError):
    """Authentication failure or invalid request. Never retried."""


class GenerationCancelled(SweeplabError):
    """The generation was abandoned because its batch was stopped."""
