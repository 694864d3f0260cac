# Copyright (c) Syntropy Systems
"""Pydantic models for batches, tasks and quality scores."""

from __future__ import annotations

import math
from enum import Enum
from typing import TYPE_CHECKING, Literal, Optional

from pydantic import Field

from sweeplab.errors import ConfigurationError

from .base import FrozenModel, ParamValue, SweeplabBaseModel

if TYPE_CHECKING:
    from collections.abc import ItemsView, KeysView, Mapping

METRIC_NAMES: tuple[str, ...] = (
    "coherence",
    "completeness",
    "readability",
    "creativity",
    "specificity",
    "length_appropriateness",
)

# Tolerance when checking that metric weights sum to one
WEIGHT_SUM_TOLERANCE = 1e-6


class BatchStatus(str, Enum):
    """Lifecycle states of a batch."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.STOPPED, BatchStatus.COMPLETED, BatchStatus.FAILED)


class TaskStatus(str, Enum):
    """Per-task states. Transitions only move forward."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"
    NOT_RUN = "not_run"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED_FATAL, TaskStatus.NOT_RUN)


class ParameterSpec(SweeplabBaseModel):
    """Range of values swept for one generation parameter."""

    name: str
    min: float
    max: float
    step: float

    def describe(self) -> str:
        """Short human readable form, e.g. ``temperature[0.0..1.0/0.5]``."""
        return f"{self.name}[{self.min}..{self.max}/{self.step}]"


class Combination(FrozenModel):
    """One concrete cell of the parameter grid.

    Behaves like a read-only mapping from parameter name to value and carries
    its position in the deterministic expansion order.
    """

    index: int
    values: dict[str, ParamValue] = Field(default_factory=dict)

    def __getitem__(self, name: str) -> ParamValue:
        return self.values[name]

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def __len__(self) -> int:
        return len(self.values)

    def __hash__(self) -> int:
        return hash((self.index, tuple(sorted(self.values.items()))))

    def items(self) -> ItemsView[str, ParamValue]:
        """Return the mapping's items view."""
        return self.values.items()

    def keys(self) -> KeysView[str]:
        """Return the mapping's keys view."""
        return self.values.keys()

    def get(self, name: str, default: ParamValue | None = None) -> ParamValue | None:
        """Return a parameter value or the provided default."""
        return self.values.get(name, default)

    def label(self) -> str:
        """Format as ``temperature=0.5, top_p=1.0``."""
        return ", ".join(f"{k}={v}" for k, v in self.values.items())


class QualityWeights(FrozenModel):
    """Weights used to combine the six metrics into the overall score."""

    coherence: float = 1 / 6
    completeness: float = 1 / 6
    readability: float = 1 / 6
    creativity: float = 1 / 6
    specificity: float = 1 / 6
    length_appropriateness: float = 1 / 6

    @classmethod
    def from_mapping(cls, data: Mapping[str, float] | None) -> QualityWeights:
        """Build validated weights from a partial or full mapping.

        Metrics missing from ``data`` keep their default weight, so a partial
        mapping only validates if the result still sums to one.
        """
        if not data:
            return cls()
        unknown = sorted(set(data) - set(METRIC_NAMES))
        if unknown:
            msg = f"Unknown metric weight(s): {', '.join(unknown)}"
            raise ConfigurationError(msg)
        values: dict[str, float] = {}
        for name, raw in data.items():
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                msg = f"Weight for '{name}' must be a number, got {raw!r}"
                raise ConfigurationError(msg)
            values[name] = float(raw)
        weights = cls(**values)
        weights.validate_sum()
        return weights

    def validate_sum(self) -> None:
        """Raise ConfigurationError unless weights are finite, >= 0 and sum to 1."""
        for name, value in self.as_dict().items():
            if not math.isfinite(value) or value < 0:
                msg = f"Weight for '{name}' must be a non-negative number, got {value}"
                raise ConfigurationError(msg)
        total = sum(self.as_dict().values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            msg = f"Metric weights must sum to 1.0, got {total:.6f}"
            raise ConfigurationError(msg)

    def as_dict(self) -> dict[str, float]:
        """Return weights keyed by metric name, in metric order."""
        return {name: getattr(self, name) for name in METRIC_NAMES}


class TextStatistics(FrozenModel):
    """Raw counts gathered while scoring a response."""

    word_count: int = 0
    sentence_count: int = 0
    paragraph_count: int = 0
    avg_sentence_length: float = 0.0
    lexical_diversity: float = 0.0


class QualityScore(FrozenModel):
    """Six metrics in [0, 1] and their weighted overall score."""

    coherence: float
    completeness: float
    readability: float
    creativity: float
    specificity: float
    length_appropriateness: float
    overall: float
    stats: TextStatistics = Field(default_factory=TextStatistics)

    @classmethod
    def zero(cls, stats: TextStatistics | None = None) -> QualityScore:
        """Score given to empty responses and to responses that failed scoring."""
        return cls(
            **dict.fromkeys(METRIC_NAMES, 0.0),
            overall=0.0,
            stats=stats or TextStatistics(),
        )

    def metrics(self) -> dict[str, float]:
        """Return the six metric values keyed by name."""
        return {name: getattr(self, name) for name in METRIC_NAMES}


class TokenUsage(SweeplabBaseModel):
    """Token accounting reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerationTask(SweeplabBaseModel):
    """One generation: a combination at a given iteration."""

    batch_id: str
    combination: Combination
    iteration_index: int
    attempt: int = 0
    status: TaskStatus = TaskStatus.PENDING
    result_text: Optional[str] = None
    score: Optional[QualityScore] = None
    error: Optional[str] = None
    usage: Optional[TokenUsage] = None
    latency_ms: Optional[float] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def key(self) -> tuple[str, int, int]:
        """Unique identity of the task within all batches."""
        return (self.batch_id, self.combination.index, self.iteration_index)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class BatchJob(SweeplabBaseModel):
    """A sweep of one prompt over a parameter grid."""

    id: str
    name: str
    prompt: str
    model: Optional[str] = None
    specs: list[ParameterSpec] = Field(default_factory=list)
    iterations_per_combination: int = 1
    weights: QualityWeights = Field(default_factory=QualityWeights)
    status: BatchStatus = BatchStatus.QUEUED
    created_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    progress: float = 0.0
    total_tasks: int = 0
    succeeded: int = 0
    failed: int = 0
    not_run: int = 0
    in_flight: int = 0
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def completed_tasks(self) -> int:
        return self.succeeded + self.failed


class CombinationStats(SweeplabBaseModel):
    """Aggregated scores of the succeeded iterations of one combination."""

    combination: Combination
    count: int
    mean_overall: float
    best_overall: float
    metric_means: dict[str, float] = Field(default_factory=dict)


class BatchSummary(SweeplabBaseModel):
    """Statistics derived from the succeeded tasks of a batch."""

    batch_id: str
    total_tasks: int = 0
    succeeded: int = 0
    failed: int = 0
    best: Optional[GenerationTask] = None
    mean_overall: Optional[float] = None
    metric_means: dict[str, float] = Field(default_factory=dict)
    correlations: dict[str, Optional[float]] = Field(default_factory=dict)
    combinations: list[CombinationStats] = Field(default_factory=list)
    best_combination: Optional[CombinationStats] = None

    @property
    def is_empty(self) -> bool:
        return self.best is None


class BatchEvent(SweeplabBaseModel):
    """State change published by the scheduler."""

    kind: Literal["batch", "task", "deleted"]
    batch: BatchJob
    task: Optional[GenerationTask] = None
