"""Admission queue: FIFO of prompts drained by a single worker task.

Producers call :meth:`AdmissionQueue.submit` without awaiting and get back a
future that resolves with the :class:`SecurityDecision`. Prompts are analysed
one at a time in submission order, so every side effect (audit, notification,
storage) happens in FIFO order.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from cloak_gateway.exceptions import (
    CloakError,
    PipelineError,
    QueueFullError,
    QueueShutdownError,
)
from cloak_gateway.logging import get_logger
from cloak_gateway.queue.models import OperationKind, QueueItem, QueueStats
from cloak_gateway.queue.monitor import PerformanceMonitor
from cloak_gateway.security.models import Prompt, SecurityDecision

log = get_logger("cloak_gateway.queue.manager")

# Graceful shutdown: max seconds to wait for the in-flight prompt.
_DRAIN_TIMEOUT_SECONDS = 30

Handler = Callable[[Prompt], Awaitable[SecurityDecision]]


class AdmissionQueue:
    """Bounded FIFO admission queue with one worker."""

    def __init__(
        self,
        handler: Handler,
        *,
        max_size: int = 100,
        monitor: PerformanceMonitor | None = None,
    ) -> None:
        self._handler = handler
        self._max_size = max_size
        self._monitor = monitor or PerformanceMonitor(max_queue_size=max_size)
        self._items: deque[QueueItem] = deque()
        self._wakeup = asyncio.Event()
        self._worker: asyncio.Task[None] | None = None
        self._housekeeping_task: asyncio.Task[None] | None = None
        self._in_flight: QueueItem | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker and the idle housekeeping loop."""
        if self._running:
            log.warning("admission_queue_already_running")
            return

        self._running = True
        self._worker = asyncio.create_task(self._worker_loop(), name="cloak-admission-worker")
        self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())
        log.info("admission_queue_started", max_size=self._max_size)

    async def stop(self) -> None:
        """Stop the worker.

        1. Stop accepting new prompts.
        2. Wait up to ``_DRAIN_TIMEOUT_SECONDS`` for the in-flight prompt.
        3. Fail every still-queued prompt with :class:`QueueShutdownError`.
        """
        if not self._running:
            return

        log.info("admission_queue_stopping", pending=len(self._items))
        self._running = False
        self._wakeup.set()

        if self._housekeeping_task and not self._housekeeping_task.done():
            self._housekeeping_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._housekeeping_task
        self._housekeeping_task = None

        if self._worker is not None:
            _, pending = await asyncio.wait({self._worker}, timeout=_DRAIN_TIMEOUT_SECONDS)
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self._worker = None

        abandoned = 0
        while self._items:
            item = self._items.popleft()
            if not item.future.done():
                item.future.set_exception(
                    QueueShutdownError("Queue stopped before the prompt was analysed")
                )
                abandoned += 1
        self._monitor.record_queue_depth(0)
        log.info("admission_queue_stopped", abandoned=abandoned)

    def submit(self, prompt: Prompt) -> asyncio.Future[SecurityDecision]:
        """Enqueue a prompt without blocking.

        Returns:
            A future resolved with the decision (or an exception).

        Raises:
            QueueShutdownError: If the queue is not running.
            QueueFullError: If ``max_size`` prompts are already waiting.
        """
        if not self._running:
            raise QueueShutdownError("Admission queue is not running")

        if len(self._items) >= self._max_size:
            self._monitor.record_dropped()
            raise QueueFullError(self._max_size)

        future: asyncio.Future[SecurityDecision] = asyncio.get_running_loop().create_future()
        self._items.append(QueueItem(prompt=prompt, future=future))
        self._monitor.record_queue_depth(len(self._items))
        self._wakeup.set()
        log.debug(
            "prompt_enqueued",
            prompt_id=prompt.id,
            source=prompt.source.value,
            depth=len(self._items),
        )
        return future

    def cancel(self, prompt_id: str) -> bool:
        """Withdraw a still-queued prompt. In-flight prompts cannot be cancelled."""
        for item in self._items:
            if item.prompt.id == prompt_id:
                self._items.remove(item)
                item.future.cancel()
                self._monitor.record_queue_depth(len(self._items))
                log.info("prompt_cancelled", prompt_id=prompt_id)
                return True
        return False

    @property
    def max_size(self) -> int:
        return self._max_size

    def set_max_size(self, max_size: int) -> None:
        """Change the capacity; already queued prompts are kept."""
        self._max_size = max_size
        self._monitor.max_queue_size = max_size
        log.info("admission_queue_resized", max_size=max_size)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return len(self._items)

    @property
    def in_flight(self) -> Prompt | None:
        return self._in_flight.prompt if self._in_flight else None

    @property
    def stats(self) -> QueueStats:
        return self._monitor.queue_stats()

    @property
    def monitor(self) -> PerformanceMonitor:
        return self._monitor

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "in_flight": self._in_flight.prompt.id if self._in_flight else None,
            "max_size": self._max_size,
            **self.stats.to_dict(),
        }

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        """Analyse queued prompts one at a time until stopped."""
        log.debug("admission_worker_started")
        while self._running:
            if not self._items:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            item = self._items.popleft()
            self._monitor.record_queue_depth(len(self._items))
            if item.future.done():
                continue

            self._in_flight = item
            try:
                await self._process_item(item)
            finally:
                self._in_flight = None
        log.debug("admission_worker_stopped")

    async def _process_item(self, item: QueueItem) -> None:
        self._monitor.record_processed(item.wait_ms)
        op_id = self._monitor.start_operation(OperationKind.ANALYSIS)
        try:
            decision = await self._handler(item.prompt)
        except asyncio.CancelledError:
            self._monitor.end_operation(op_id, success=False)
            if not item.future.done():
                item.future.set_exception(QueueShutdownError("Queue stopped mid-analysis"))
            raise
        except CloakError as e:
            self._monitor.end_operation(op_id, success=False)
            log.warning("prompt_processing_failed", prompt_id=item.prompt.id, error=str(e))
            if not item.future.done():
                item.future.set_exception(e)
        except Exception as e:
            self._monitor.end_operation(op_id, success=False)
            log.exception("prompt_processing_crashed", prompt_id=item.prompt.id)
            if not item.future.done():
                item.future.set_exception(PipelineError(item.prompt.id, e))
        else:
            self._monitor.end_operation(op_id, success=True)
            if not item.future.done():
                item.future.set_result(decision)

    async def _housekeeping_loop(self) -> None:
        """Periodically re-evaluate idleness (trims metrics when idle)."""
        interval = self._monitor.idle_check_interval_ms / 1000.0
        while self._running:
            try:
                await asyncio.sleep(interval)
                self._monitor.check_idle()
            except asyncio.CancelledError:
                break
            except Exception:
                log.exception("admission_housekeeping_error")
