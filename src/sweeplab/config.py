# Copyright (c) Syntropy Systems
"""Configuration management for sweeplab."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, cast

import yaml

from sweeplab.errors import ConfigurationError
from sweeplab.models import QualityWeights
from sweeplab.retry import RetryPolicy

PROJECT_DIR_NAME = ".sweeplab"


@dataclass
class SweeplabConfig:
    """Configuration for sweeplab."""

    # Number of concurrent provider calls per batch
    concurrency: int = 4

    # Retry policy for transient provider errors
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_cap: float = 30.0
    backoff_jitter: float = 0.25

    # Provider selection: mock or openai
    provider: str = "mock"
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    request_timeout: float = 60.0
    model: str = "gpt-3.5-turbo"

    # Mock provider knobs
    mock_seed: int = 0
    mock_latency: tuple[float, float] = (0.05, 0.2)

    # Metric weights (metric name -> weight); empty means equal weights
    weights: dict[str, float] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise ConfigurationError for values the engine cannot run with."""
        if self.concurrency < 1:
            msg = f"concurrency must be a positive integer, got {self.concurrency}"
            raise ConfigurationError(msg)
        _ = self.retry_policy()
        _ = self.quality_weights()

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy described by this config."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_cap,
            jitter=self.backoff_jitter,
        )

    def quality_weights(self) -> QualityWeights:
        """Validated metric weights."""
        return QualityWeights.from_mapping(self.weights)

    def api_key(self) -> Optional[str]:
        """API key from $SWEEPLAB_API_KEY or the configured variable."""
        return os.environ.get("SWEEPLAB_API_KEY") or os.environ.get(self.api_key_env)

    def to_dict(self) -> dict[str, object]:
        """Serializable form written by ``sweeplab init``."""
        return {
            "concurrency": self.concurrency,
            "max_attempts": self.max_attempts,
            "backoff_base": self.backoff_base,
            "backoff_cap": self.backoff_cap,
            "backoff_jitter": self.backoff_jitter,
            "provider": self.provider,
            "base_url": self.base_url,
            "api_key_env": self.api_key_env,
            "request_timeout": self.request_timeout,
            "model": self.model,
            "weights": dict(self.weights),
        }


def find_sweeplab_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .sweeplab directory by walking up from start_path.

    Returns None if no .sweeplab directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        project_dir = current / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    # Check root
    project_dir = current / PROJECT_DIR_NAME
    if project_dir.is_dir():
        return project_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global sweeplab config directory (~/.sweeplab)."""
    return Path.home() / PROJECT_DIR_NAME


def _number(data: dict[str, object], key: str) -> float | None:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def load_config(project_dir: Path | None = None) -> SweeplabConfig:
    """Load configuration from .sweeplab/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .sweeplab directory walking up
    3. ~/.sweeplab/config.yaml
    4. Defaults

    Keys with the wrong type are ignored; invalid weights raise
    ConfigurationError.
    """
    config = SweeplabConfig()

    config_path = None

    if project_dir is not None:
        config_path = project_dir / "config.yaml"
    else:
        found_dir = find_sweeplab_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is None or not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    for key in ("concurrency", "max_attempts", "mock_seed"):
        value = _number(data, key)
        if value is not None:
            setattr(config, key, int(value))
    for key in ("backoff_base", "backoff_cap", "backoff_jitter", "request_timeout"):
        value = _number(data, key)
        if value is not None:
            setattr(config, key, float(value))
    for key in ("provider", "base_url", "api_key_env", "model"):
        value = data.get(key)
        if isinstance(value, str) and value:
            setattr(config, key, value)

    latency = data.get("mock_latency")
    if isinstance(latency, list) and len(latency) == 2:  # noqa: PLR2004
        low, high = latency
        if isinstance(low, (int, float)) and isinstance(high, (int, float)):
            config.mock_latency = (float(low), float(high))

    weights = data.get("weights")
    if isinstance(weights, dict):
        config.weights = cast("dict[str, float]", weights)
        _ = config.quality_weights()

    return config


def get_db_path(project_dir: Path | None = None) -> Path:
    """Get the path to the SQLite snapshot store."""
    if project_dir is None:
        project_dir = require_sweeplab_dir()
    return project_dir / "sweeplab.db"


def require_sweeplab_dir() -> Path:
    """Get the project directory or raise an error if not found."""
    project_dir = find_sweeplab_dir()
    if project_dir is None:
        msg = "No .sweeplab directory found. Run 'sweeplab init' first."
        raise RuntimeError(msg)
    return project_dir
