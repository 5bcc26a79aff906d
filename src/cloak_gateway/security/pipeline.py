"""Prompt analysis pipeline.

Local detection always runs first. While the classifier is healthy its
result is merged with the local one; in degraded mode (or when the call
fails) the local result is used on its own at reduced confidence. The
gatekeeper then decides and audits. The prompt is never modified.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from cloak_gateway.exceptions import ClassifierUnavailableError, PipelineError
from cloak_gateway.logging import get_logger
from cloak_gateway.queue.models import OperationKind
from cloak_gateway.security.merge import degraded_analysis, merge
from cloak_gateway.security.models import (
    AuditEvent,
    AuditEventKind,
    LocalDetection,
    Prompt,
    SecurityAnalysis,
    SecurityDecision,
    StoredAnalysisResult,
    ThreatLevel,
    content_digest,
)
from cloak_gateway.security.patterns import detect

if TYPE_CHECKING:
    from cloak_gateway.queue.monitor import PerformanceMonitor
    from cloak_gateway.security.classifier import RemoteClassifier
    from cloak_gateway.security.gatekeeper import Gatekeeper
    from cloak_gateway.security.health import HealthMonitor
    from cloak_gateway.storage.audit import AuditStore

log = get_logger("cloak_gateway.security.pipeline")


def verify_integrity(original: Prompt, passed: Prompt) -> bool:
    """Check that the prompt handed downstream is the one that was submitted."""
    return (
        original.id == passed.id
        and original.content == passed.content
        and content_digest(original.content) == content_digest(passed.content)
    )


class SecurityPipeline:
    """Detect, classify, merge and enforce for a single prompt."""

    def __init__(
        self,
        classifier: RemoteClassifier,
        health: HealthMonitor,
        gatekeeper: Gatekeeper,
        audit_store: AuditStore | None = None,
        *,
        max_prompt_length: int = 10000,
        monitor: PerformanceMonitor | None = None,
    ) -> None:
        self._classifier = classifier
        self._health = health
        self._gatekeeper = gatekeeper
        self._audit_store = audit_store
        self.max_prompt_length = max_prompt_length
        self._monitor = monitor

    async def process(self, prompt: Prompt) -> SecurityDecision:
        """Analyse a prompt through the full pipeline.

        Raises:
            PipelineError: On any unexpected fault; an ``error`` audit event
                is recorded first.
        """
        start = time.perf_counter()
        level = ThreatLevel.SAFE
        try:
            # Scan at most max_prompt_length characters; the prompt is untouched
            local = detect(prompt.content[: self.max_prompt_length])
            level = local.suggested_level

            analysis = await self._analyze(prompt, local, start)
            decision = await self._gatekeeper.enforce(analysis, prompt)

            if self._audit_store is not None:
                await self._audit_store.store_result(StoredAnalysisResult.from_decision(decision))
        except Exception as e:
            log.exception("pipeline_failed", prompt_id=prompt.id)
            await self._record_error(prompt, level, start)
            raise PipelineError(prompt.id, e) from e

        log.debug(
            "pipeline_complete",
            prompt_id=prompt.id,
            action=decision.action.value,
            threat_level=decision.analysis.threat_level.value,
            confidence=decision.analysis.confidence,
            degraded=self._health.is_degraded,
            processing_ms=decision.analysis.processing_time_ms,
        )
        return decision

    async def _analyze(
        self, prompt: Prompt, local: LocalDetection, start: float
    ) -> SecurityAnalysis:
        if self._health.is_degraded:
            return degraded_analysis(local, _elapsed_ms(start))

        op_id = self._start_operation(OperationKind.CLASSIFY)
        try:
            remote = await self._classifier.classify(prompt.content)
        except ClassifierUnavailableError as e:
            self._end_operation(op_id, success=False)
            self._health.record_failure(e.reason)
            return degraded_analysis(local, _elapsed_ms(start))
        except Exception:
            self._end_operation(op_id, success=False)
            raise

        self._end_operation(op_id, success=True)
        self._health.record_success()
        return merge(local, remote, _elapsed_ms(start))

    def _start_operation(self, kind: OperationKind) -> str | None:
        if self._monitor is None:
            return None
        return self._monitor.start_operation(kind)

    def _end_operation(self, op_id: str | None, *, success: bool) -> None:
        if self._monitor is not None and op_id is not None:
            self._monitor.end_operation(op_id, success=success)

    async def _record_error(self, prompt: Prompt, level: ThreatLevel, start: float) -> None:
        if self._audit_store is None or not self._gatekeeper.enable_audit:
            return
        try:
            await self._audit_store.append(
                AuditEvent(
                    kind=AuditEventKind.ERROR,
                    prompt_digest=prompt.digest,
                    threat_level=level,
                    confidence=0.0,
                    processing_time_ms=_elapsed_ms(start),
                )
            )
        except Exception:
            log.exception("error_audit_failed", prompt_id=prompt.id)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
