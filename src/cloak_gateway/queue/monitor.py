"""Performance and idle monitoring for the admission queue."""

from __future__ import annotations

import itertools
import time
from collections.abc import Callable

from cloak_gateway.logging import get_logger
from cloak_gateway.queue.models import OperationMetrics, PerformanceStats, QueueStats

log = get_logger("cloak_gateway.queue.monitor")

# Smoothing factor for the average queue wait
_WAIT_EMA_ALPHA = 0.1

# Queue depth (fraction of capacity) that triggers a warning
_QUEUE_WARNING_RATIO = 0.8


class PerformanceMonitor:
    """Tracks operation timings, queue counters and idleness.

    The system counts as idle once nothing happened for twice the idle check
    interval; entering idle trims the retained metrics.
    """

    def __init__(
        self,
        retention_count: int = 1000,
        *,
        max_queue_size: int = 100,
        idle_check_interval_ms: int = 30000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retention_count = retention_count
        self.max_queue_size = max_queue_size
        self.idle_check_interval_ms = idle_check_interval_ms
        self._clock = clock
        self._counter = itertools.count(1)
        self._metrics: list[OperationMetrics] = []
        self._active: dict[str, OperationMetrics] = {}
        self._queue = QueueStats()
        self._started_at = clock()
        self._last_activity = self._started_at
        self._idle = True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start_operation(self, kind: str) -> str:
        """Begin timing an operation and return its id."""
        now = self._clock()
        op_id = f"op-{next(self._counter)}"
        self._active[op_id] = OperationMetrics(operation_id=op_id, kind=kind, started_at=now)
        self._touch(now)
        return op_id

    def end_operation(self, op_id: str, success: bool) -> None:
        """Finish timing an operation. Unknown ids are ignored."""
        metric = self._active.pop(op_id, None)
        if metric is None:
            return
        now = self._clock()
        metric.ended_at = now
        metric.success = success
        self._metrics.append(metric)
        self._touch(now)

        if len(self._metrics) > self.retention_count:
            self.trim()

    @property
    def active_operation_count(self) -> int:
        return len(self._active)

    @property
    def metrics(self) -> list[OperationMetrics]:
        return list(self._metrics)

    # ------------------------------------------------------------------
    # Queue counters
    # ------------------------------------------------------------------

    def record_queue_depth(self, size: int) -> None:
        self._queue.current_size = size
        self._queue.peak_size = max(self._queue.peak_size, size)
        if size > self.max_queue_size * _QUEUE_WARNING_RATIO:
            log.warning("queue_near_capacity", size=size, max_size=self.max_queue_size)

    def record_processed(self, wait_ms: float) -> None:
        self._queue.total_processed += 1
        self._queue.average_wait_ms = (
            _WAIT_EMA_ALPHA * wait_ms + (1 - _WAIT_EMA_ALPHA) * self._queue.average_wait_ms
        )

    def record_dropped(self) -> None:
        self._queue.dropped_requests += 1
        log.warning("queue_request_dropped", total_dropped=self._queue.dropped_requests)

    def queue_stats(self) -> QueueStats:
        return QueueStats(**vars(self._queue))

    @property
    def capacity_percent(self) -> float:
        return self._queue.current_size / self.max_queue_size * 100.0

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> PerformanceStats:
        """Aggregate statistics over retained, completed operations."""
        completed = [m for m in self._metrics if m.duration_ms is not None]
        durations = sorted(m.duration_ms for m in completed if m.duration_ms is not None)
        total = len(durations)
        uptime = self._clock() - self._started_at
        if not total:
            return PerformanceStats(uptime_seconds=uptime)

        successful = sum(1 for m in completed if m.success)
        p95_index = int(total * 0.95)
        uptime_minutes = uptime / 60.0
        return PerformanceStats(
            total_operations=total,
            successful_operations=successful,
            failed_operations=total - successful,
            average_duration_ms=sum(durations) / total,
            min_duration_ms=durations[0],
            max_duration_ms=durations[-1],
            p95_duration_ms=durations[min(p95_index, total - 1)],
            operations_per_minute=total / uptime_minutes if uptime_minutes > 0 else 0.0,
            uptime_seconds=uptime,
        )

    # ------------------------------------------------------------------
    # Idle handling
    # ------------------------------------------------------------------

    def _touch(self, now: float) -> None:
        self._last_activity = now
        if self._idle:
            self._idle = False
            log.debug("monitor_exited_idle")

    @property
    def seconds_since_activity(self) -> float:
        return self._clock() - self._last_activity

    @property
    def is_idle(self) -> bool:
        return self._idle

    def check_idle(self) -> bool:
        """Re-evaluate idleness; trims metrics on entering idle."""
        idle = self.seconds_since_activity * 1000.0 > self.idle_check_interval_ms * 2
        if idle and not self._idle:
            log.debug("monitor_entered_idle", retained_metrics=len(self._metrics))
            self.trim()
        self._idle = idle
        return idle

    def trim(self, keep: int | None = None) -> None:
        """Keep only the newest ``keep`` metrics (default: retention count)."""
        count = self.retention_count if keep is None else keep
        if len(self._metrics) > count:
            self._metrics = self._metrics[-count:] if count else []

    def reset(self) -> None:
        self._metrics.clear()
        self._active.clear()
        self._queue = QueueStats()
        self._started_at = self._clock()
        self._last_activity = self._started_at
        self._idle = True
        log.info("performance_monitor_reset")
