# Copyright (c) Syntropy Systems
"""Generation provider interface and cancellation token."""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from sweeplab.errors import GenerationCancelled

if TYPE_CHECKING:
    from sweeplab.models import Combination, TokenUsage


class CancellationToken:
    """Cancellation signal shared by every call of one batch.

    Providers should check it between blocking steps and use ``wait`` instead
    of ``time.sleep`` so a stopped batch releases its workers promptly.
    """

    _event: threading.Event

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Signal cancellation to everyone holding this token."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds. Returns True if cancelled meanwhile."""
        return self._event.wait(timeout=timeout)

    def raise_if_cancelled(self) -> None:
        """Raise GenerationCancelled if the token was cancelled."""
        if self._event.is_set():
            msg = "Generation cancelled"
            raise GenerationCancelled(msg)


@dataclass
class Generation:
    """Text returned by a provider along with its accounting."""

    text: str
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None


class GenerationProvider(ABC):
    """Something that turns a prompt and a parameter combination into text.

    ``generate`` raises ProviderTransientError for failures worth retrying
    (rate limits, timeouts, network errors) and ProviderFatalError for the
    rest. Implementations must be safe to call from several threads.
    """

    name: str = "provider"

    @abstractmethod
    def generate(
        self,
        prompt: str,
        combination: Combination,
        cancel: CancellationToken,
        model: Optional[str] = None,
    ) -> Generation:
        """Generate one response."""

    def check(self, model: Optional[str] = None) -> None:  # noqa: B027
        """Preflight check run before a batch dispatches anything.

        Raise ProviderFatalError when the batch cannot possibly succeed,
        e.g. rejected credentials or an unknown model.
        """

    def close(self) -> None:  # noqa: B027
        """Release network resources."""
