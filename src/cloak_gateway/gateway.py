"""Gateway: composition root for the prompt security services.

Builds every service from one configuration snapshot, wires configuration
changes into them, and owns their lifecycle::

    async with Gateway() as gateway:
        decision = await gateway.analyze("explain this regex")
"""

from __future__ import annotations

import asyncio
from types import TracebackType
from typing import Any, Self

from cloak_gateway.config import Settings
from cloak_gateway.exceptions import PipelineError, PromptTooLongError
from cloak_gateway.logging import get_logger
from cloak_gateway.queue.manager import AdmissionQueue
from cloak_gateway.queue.models import OperationKind
from cloak_gateway.queue.monitor import PerformanceMonitor
from cloak_gateway.security.classifier import RemoteClassifier
from cloak_gateway.security.gatekeeper import Gatekeeper, Notifier
from cloak_gateway.security.health import HealthMonitor, HealthState
from cloak_gateway.security.models import (
    Prompt,
    PromptSource,
    SecurityDecision,
    profile_for,
)
from cloak_gateway.security.pipeline import SecurityPipeline, verify_integrity
from cloak_gateway.settings_manager import ConfigurationChangeEvent, ConfigurationService
from cloak_gateway.storage.audit import AuditStore

log = get_logger("cloak_gateway.gateway")


class Gateway:
    """Owns and wires the admission queue, pipeline and supporting services."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        classifier: RemoteClassifier | None = None,
        audit_store: AuditStore | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = ConfigurationService(settings)
        s = self.config.settings

        self.monitor = PerformanceMonitor(
            s.metrics_retention_count,
            max_queue_size=s.queue_max_size,
            idle_check_interval_ms=s.idle_check_interval_ms,
        )
        self.classifier = classifier or RemoteClassifier(
            endpoint=s.classifier_endpoint,
            model=s.classifier_model,
            timeout_ms=s.classifier_timeout_ms,
            system_prompt=s.system_prompt,
        )
        self.audit_store = audit_store or AuditStore(
            max_entries=s.audit_max_entries,
            rotation_threshold=s.audit_rotation_threshold,
            db_path=s.audit_db_path,
        )
        self.health = HealthMonitor(
            self.classifier, probe_interval_seconds=s.health_probe_interval_seconds
        )
        self.gatekeeper = Gatekeeper(
            self.config.sensitivity_profile,
            self.audit_store,
            enable_override=s.enable_user_override,
            enable_audit=s.enable_audit_log,
            notifier=notifier,
            max_tracked_overrides=s.audit_max_entries,
        )
        self.pipeline = SecurityPipeline(
            self.classifier,
            self.health,
            self.gatekeeper,
            self.audit_store,
            max_prompt_length=s.max_prompt_length,
            monitor=self.monitor,
        )
        self.queue = AdmissionQueue(
            self.pipeline.process, max_size=s.queue_max_size, monitor=self.monitor
        )
        self._unsubscribe: list[Any] = []
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Start the worker, probe the classifier and begin periodic probing."""
        if self._initialized:
            return

        log.info(
            "gateway_initializing",
            endpoint=self.config.settings.classifier_endpoint,
            sensitivity=self.config.settings.threat_sensitivity,
        )
        self._unsubscribe.append(self.config.subscribe(self._on_config_change))
        self._unsubscribe.append(self.health.subscribe(self._on_health_change))

        await self.queue.start()
        state = await self.check_health()
        await self.health.start()
        self._initialized = True
        log.info("gateway_initialized", health=state.value)

    async def shutdown(self) -> None:
        """Stop services in reverse order and release the HTTP client."""
        if not self._initialized:
            return

        log.info("gateway_shutting_down")
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

        await self.queue.stop()
        await self.health.stop()
        await self.classifier.close()
        self._initialized = False
        log.info("gateway_shutdown_complete")

    async def __aenter__(self) -> Self:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Prompt handling
    # ------------------------------------------------------------------

    def submit(
        self,
        content: str,
        source: PromptSource | str = PromptSource.API,
        **metadata: Any,
    ) -> tuple[Prompt, asyncio.Future[SecurityDecision]]:
        """Create a prompt and enqueue it without waiting.

        Raises:
            PromptTooLongError: If the content exceeds ``max_prompt_length``.
            QueueFullError: If the admission queue is at capacity.
            QueueShutdownError: If the gateway is not initialized.
        """
        max_length = self.config.settings.max_prompt_length
        if len(content) > max_length:
            raise PromptTooLongError(len(content), max_length)

        prompt = Prompt.create(content, source=source, **metadata)
        return prompt, self.queue.submit(prompt)

    async def analyze(
        self,
        content: str,
        source: PromptSource | str = PromptSource.API,
        **metadata: Any,
    ) -> SecurityDecision:
        """Submit a prompt and wait for its decision."""
        prompt, future = self.submit(content, source, **metadata)
        decision = await future

        if decision.allowed and not verify_integrity(prompt, decision.prompt):
            log.error("prompt_integrity_violation", prompt_id=prompt.id)
            raise PipelineError(prompt.id, RuntimeError("prompt changed during analysis"))
        return decision

    def cancel(self, prompt_id: str) -> bool:
        return self.queue.cancel(prompt_id)

    async def override(
        self, decision: SecurityDecision, confirm: bool
    ) -> SecurityDecision | None:
        """Override a blocked decision; see :meth:`Gatekeeper.override`."""
        return await self.gatekeeper.override(decision, confirm)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def check_health(self) -> HealthState:
        op_id = self.monitor.start_operation(OperationKind.HEALTH_CHECK)
        state = await self.health.check()
        self.monitor.end_operation(op_id, success=state == HealthState.HEALTHY)
        return state

    def get_status(self) -> dict[str, Any]:
        """Queue counters, health, decision counts and performance summary."""
        stats = self.queue.stats
        return {
            "initialized": self._initialized,
            "health": self.health.state.value,
            "last_failure": self.health.last_failure,
            "sensitivity": self.config.settings.threat_sensitivity,
            "queue": {
                "depth": stats.current_size,
                "peak_depth": stats.peak_size,
                "dropped": stats.dropped_requests,
                "total_processed": stats.total_processed,
                "average_wait_ms": round(stats.average_wait_ms, 2),
                "max_size": self.queue.max_size,
            },
            "decisions": self.gatekeeper.decision_counts,
            "performance": self.monitor.stats().to_dict(),
            "idle": self.monitor.is_idle,
        }

    # ------------------------------------------------------------------
    # Change propagation
    # ------------------------------------------------------------------

    def update_config(self, **changes: Any) -> Settings:
        return self.config.update(**changes)

    def _on_config_change(self, event: ConfigurationChangeEvent) -> None:
        new = event.new
        if event.affects("threat_sensitivity"):
            self.gatekeeper.set_profile(profile_for(new.threat_sensitivity))
        if event.affects("enable_user_override"):
            self.gatekeeper.enable_override = new.enable_user_override
        if event.affects("enable_audit_log"):
            self.gatekeeper.enable_audit = new.enable_audit_log
        if event.affects("classifier_endpoint"):
            self.classifier.update_endpoint(new.classifier_endpoint)
        if event.affects("classifier_timeout_ms"):
            self.classifier.update_timeout(new.classifier_timeout_ms)
        if event.affects("system_prompt"):
            self.classifier.update_system_prompt(new.system_prompt)
        if event.affects("max_prompt_length"):
            self.pipeline.max_prompt_length = new.max_prompt_length
        if event.affects("queue_max_size"):
            self.queue.set_max_size(new.queue_max_size)
        if event.affects("health_probe_interval_seconds"):
            self.health.probe_interval_seconds = new.health_probe_interval_seconds
        if event.affects("metrics_retention_count"):
            self.monitor.retention_count = new.metrics_retention_count
        if event.affects("idle_check_interval_ms"):
            self.monitor.idle_check_interval_ms = new.idle_check_interval_ms

    def _on_health_change(self, old: HealthState, new: HealthState) -> None:
        log.info("gateway_health_changed", old=old.value, new=new.value)
