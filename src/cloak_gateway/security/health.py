"""Health state machine for the remote classifier.

``healthy`` while the classifier answers; ``degraded`` after a failure, in
which case the pipeline skips the remote call and uses local detection only.
A probe (on demand or periodic) moves it back to ``healthy``.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from enum import StrEnum
from typing import Protocol

from cloak_gateway.logging import get_logger

log = get_logger("cloak_gateway.security.health")


class HealthState(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class Probeable(Protocol):
    async def probe(self) -> bool: ...


HealthListener = Callable[[HealthState, HealthState], None]


class HealthMonitor:
    """Tracks whether the remote classifier is usable."""

    def __init__(self, classifier: Probeable, *, probe_interval_seconds: float = 60) -> None:
        self._classifier = classifier
        self.probe_interval_seconds = probe_interval_seconds
        self._state = HealthState.HEALTHY
        self._last_failure: str | None = None
        self._listeners: list[HealthListener] = []
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> HealthState:
        return self._state

    @property
    def is_degraded(self) -> bool:
        return self._state == HealthState.DEGRADED

    @property
    def last_failure(self) -> str | None:
        return self._last_failure

    def subscribe(self, listener: HealthListener) -> Callable[[], None]:
        """Register a ``(old, new)`` transition listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def record_failure(self, reason: str) -> None:
        """Enter degraded mode. Logged only on the transition."""
        self._last_failure = reason
        if self._state == HealthState.DEGRADED:
            return
        log.warning("classifier_degraded", reason=reason)
        self._transition(HealthState.DEGRADED)

    def record_success(self) -> None:
        if self._state == HealthState.HEALTHY:
            return
        log.info("classifier_recovered")
        self._last_failure = None
        self._transition(HealthState.HEALTHY)

    async def check(self) -> HealthState:
        """Probe the classifier and apply the resulting transition."""
        if await self._classifier.probe():
            self.record_success()
        else:
            self.record_failure("health probe failed")
        return self._state

    def _transition(self, new: HealthState) -> None:
        old, self._state = self._state, new
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                log.exception("health_listener_failed")

    # ------------------------------------------------------------------
    # Periodic probing
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._probe_loop())
        log.info("health_monitor_started", interval=self.probe_interval_seconds)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def _probe_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.probe_interval_seconds)
                await self.check()
            except asyncio.CancelledError:
                break
            except Exception:
                log.exception("health_probe_loop_error")
