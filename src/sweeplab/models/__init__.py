# Copyright (c) Syntropy Systems
"""Pydantic models shared across sweeplab."""

from .base import FrozenModel, JSONObject, JSONValue, ParamValue, SweeplabBaseModel, utcnow
from .batch import (
    METRIC_NAMES,
    BatchEvent,
    BatchJob,
    BatchStatus,
    BatchSummary,
    Combination,
    CombinationStats,
    GenerationTask,
    ParameterSpec,
    QualityScore,
    QualityWeights,
    TaskStatus,
    TextStatistics,
    TokenUsage,
)

__all__ = [
    "METRIC_NAMES",
    "BatchEvent",
    "BatchJob",
    "BatchStatus",
    "BatchSummary",
    "Combination",
    "CombinationStats",
    "FrozenModel",
    "GenerationTask",
    "JSONObject",
    "JSONValue",
    "ParamValue",
    "ParameterSpec",
    "QualityScore",
    "QualityWeights",
    "SweeplabBaseModel",
    "TaskStatus",
    "TextStatistics",
    "TokenUsage",
    "utcnow",
]
