"""Queue models: pending items, queue statistics and operation metrics."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from cloak_gateway.security.models import Prompt, SecurityDecision


class OperationKind(StrEnum):
    """Kinds of timed operations tracked by the performance monitor."""

    ANALYSIS = "analysis"
    CLASSIFY = "classify"
    HEALTH_CHECK = "health_check"


@dataclass
class QueueItem:
    """A prompt waiting for the worker.

    Attributes:
        prompt: The prompt to analyse.
        future: Resolved with the decision once the worker finishes.
        enqueued_at: ``time.monotonic()`` value at submission.
    """

    prompt: Prompt
    future: asyncio.Future[SecurityDecision]
    enqueued_at: float = field(default_factory=time.monotonic)

    @property
    def wait_ms(self) -> float:
        return (time.monotonic() - self.enqueued_at) * 1000.0


@dataclass
class QueueStats:
    """Snapshot of admission queue counters."""

    current_size: int = 0
    peak_size: int = 0
    total_processed: int = 0
    dropped_requests: int = 0
    average_wait_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_size": self.current_size,
            "peak_size": self.peak_size,
            "total_processed": self.total_processed,
            "dropped_requests": self.dropped_requests,
            "average_wait_ms": round(self.average_wait_ms, 2),
        }


@dataclass
class OperationMetrics:
    """Timing record for a single operation."""

    operation_id: str
    kind: str
    started_at: float
    ended_at: float | None = None
    success: bool | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at) * 1000.0


@dataclass
class PerformanceStats:
    """Aggregated operation statistics."""

    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    average_duration_ms: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    operations_per_minute: float = 0.0
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_operations": self.total_operations,
            "successful_operations": self.successful_operations,
            "failed_operations": self.failed_operations,
            "average_duration_ms": round(self.average_duration_ms, 2),
            "min_duration_ms": round(self.min_duration_ms, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "p95_duration_ms": round(self.p95_duration_ms, 2),
            "operations_per_minute": round(self.operations_per_minute, 2),
            "uptime_seconds": round(self.uptime_seconds, 1),
        }
