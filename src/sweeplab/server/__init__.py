# Copyright (c) Syntropy Systems
"""sweeplab HTTP API."""

from .app import create_app
from .models import (
    BatchCreate,
    BatchListResponse,
    BatchResponse,
    ErrorResponse,
    HealthResponse,
    SpecIn,
    TaskListResponse,
)

__all__ = [
    "BatchCreate",
    "BatchListResponse",
    "BatchResponse",
    "ErrorResponse",
    "HealthResponse",
    "SpecIn",
    "TaskListResponse",
    "create_app",
]
