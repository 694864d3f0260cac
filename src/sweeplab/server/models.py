# Copyright (c) Syntropy Systems
"""Pydantic models for the sweeplab HTTP API."""

from typing import Optional

from pydantic import BaseModel, Field

from sweeplab.models import BatchJob, GenerationTask


class SpecIn(BaseModel):
    """One swept parameter in a create request."""

    name: str = Field(..., description="Generation parameter name, e.g. temperature")
    min: float = Field(..., description="First value")
    max: float = Field(..., description="Last value (inclusive)")
    step: float = Field(..., description="Increment between values, > 0")


class BatchCreate(BaseModel):
    """Request to create a batch."""

    prompt: str = Field(..., description="Prompt sent for every task")
    specs: list[SpecIn] = Field(default_factory=list, description="Parameter ranges")
    iterations: int = Field(1, description="Iterations per combination")
    name: Optional[str] = Field(None, description="Optional batch name")
    model: Optional[str] = Field(None, description="Model override for the provider")
    weights: Optional[dict[str, float]] = Field(
        None, description="Metric weights, must sum to 1"
    )
    start: bool = Field(False, description="Start the batch right away")


class BatchResponse(BaseModel):
    """Batch snapshot."""

    batch: BatchJob


class BatchListResponse(BaseModel):
    """Every batch known to the server."""

    batches: list[BatchJob]
    count: int


class TaskListResponse(BaseModel):
    """Tasks of one batch."""

    batch_id: str
    tasks: list[GenerationTask]
    count: int


class HealthResponse(BaseModel):
    """Liveness probe response."""

    status: str = "healthy"
    provider: str
    batches: int


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str
    error_code: Optional[str] = None
