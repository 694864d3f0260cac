# Copyright (c) Syntropy Systems
"""Generation providers."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sweeplab.errors import ConfigurationError

from .base import CancellationToken, Generation, GenerationProvider
from .mock import MockProvider
from .openai import OpenAIProvider

if TYPE_CHECKING:
    from sweeplab.config import SweeplabConfig

__all__ = [
    "CancellationToken",
    "Generation",
    "GenerationProvider",
    "MockProvider",
    "OpenAIProvider",
    "create_provider",
]


def create_provider(config: SweeplabConfig) -> GenerationProvider:
    """Build the provider named in the config."""
    if config.provider == "mock":
        return MockProvider(seed=config.mock_seed, latency=config.mock_latency)
    if config.provider == "openai":
        return OpenAIProvider(
            base_url=config.base_url,
            api_key=config.api_key(),
            model=config.model,
            timeout=config.request_timeout,
        )
    msg = f"Unknown provider: {config.provider}"
    raise ConfigurationError(msg)
