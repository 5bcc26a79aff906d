"""Admission queue for Cloak Gateway.

Bounded FIFO queue drained by a single worker, plus the performance and idle
monitor that tracks its counters.
"""

from cloak_gateway.queue.manager import AdmissionQueue
from cloak_gateway.queue.models import QueueItem, QueueStats
from cloak_gateway.queue.monitor import PerformanceMonitor

__all__ = [
    "AdmissionQueue",
    "PerformanceMonitor",
    "QueueItem",
    "QueueStats",
]
