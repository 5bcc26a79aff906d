"""Decision engine: turn an analysis into allow / warn / block."""

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Callable

from cloak_gateway.logging import get_logger
from cloak_gateway.security.forensics import log_security_event
from cloak_gateway.security.models import (
    AuditEvent,
    AuditEventKind,
    DecisionAction,
    Prompt,
    SecurityAnalysis,
    SecurityDecision,
    SensitivityProfile,
    ThreatLevel,
)
from cloak_gateway.storage.audit import AuditSink

log = get_logger("cloak_gateway.security.gatekeeper")

ALLOW_REASON = "Prompt passed security analysis"

Notifier = Callable[[SecurityDecision], Awaitable[None]]

# Audit kind recorded for each decision action
_AUDIT_KIND = {
    DecisionAction.ALLOW: AuditEventKind.ALLOW,
    DecisionAction.WARN: AuditEventKind.ANALYSIS,
    DecisionAction.BLOCK: AuditEventKind.BLOCK,
}


def _with_patterns(prefix: str, analysis: SecurityAnalysis) -> str:
    categories = analysis.categories
    if not categories:
        return analysis.reasoning
    names = ", ".join(c.value for c in categories)
    return f"{prefix}: {names}. {analysis.reasoning}"


class Gatekeeper:
    """Applies the active sensitivity profile and records the outcome."""

    def __init__(
        self,
        profile: SensitivityProfile,
        audit_sink: AuditSink | None = None,
        *,
        enable_override: bool = True,
        enable_audit: bool = True,
        notifier: Notifier | None = None,
        max_tracked_overrides: int = 1000,
    ) -> None:
        self._profile = profile
        self._audit_sink = audit_sink
        self.enable_override = enable_override
        self.enable_audit = enable_audit
        self._notifier = notifier
        self._counts = {"allow": 0, "warn": 0, "block": 0, "override": 0}
        # Prompt ids already overridden, oldest first
        self._overridden: dict[str, None] = {}
        self._max_tracked_overrides = max_tracked_overrides

    @property
    def profile(self) -> SensitivityProfile:
        return self._profile

    def set_profile(self, profile: SensitivityProfile) -> None:
        """Swap thresholds; applies from the next decision."""
        self._profile = profile
        log.info(
            "sensitivity_profile_updated",
            block_threshold=profile.block_threshold,
            warn_threshold=profile.warn_threshold,
        )

    @property
    def decision_counts(self) -> dict[str, int]:
        return dict(self._counts)

    def decide(self, analysis: SecurityAnalysis, prompt: Prompt) -> SecurityDecision:
        """Map an analysis to an action. Pure: no audit, no logging."""
        profile = self._profile
        level = analysis.threat_level

        if level == ThreatLevel.DANGEROUS and analysis.confidence >= profile.block_threshold:
            return SecurityDecision(
                action=DecisionAction.BLOCK,
                reason=_with_patterns("Detected patterns", analysis),
                prompt=prompt,
                analysis=analysis,
            )

        if level == ThreatLevel.DANGEROUS or (
            level == ThreatLevel.SUSPICIOUS and analysis.confidence >= profile.warn_threshold
        ):
            return SecurityDecision(
                action=DecisionAction.WARN,
                reason=_with_patterns("Suspicious patterns", analysis),
                prompt=prompt,
                analysis=analysis,
            )

        return SecurityDecision(
            action=DecisionAction.ALLOW,
            reason=ALLOW_REASON,
            prompt=prompt,
            analysis=analysis,
        )

    async def enforce(self, analysis: SecurityAnalysis, prompt: Prompt) -> SecurityDecision:
        """Decide, then audit, log and notify."""
        decision = self.decide(analysis, prompt)
        self._counts[decision.action.value] += 1

        await self._record(_AUDIT_KIND[decision.action], decision)
        log_security_event(decision)

        if decision.action != DecisionAction.ALLOW:
            await self._notify(decision)
        return decision

    async def override(
        self, decision: SecurityDecision, explicit_confirmation: bool
    ) -> SecurityDecision | None:
        """Let the user proceed with a blocked prompt.

        Returns the new ``allow`` decision, or ``None`` when the override is
        not permitted: not confirmed, not a block, overrides disabled, or the
        prompt was already overridden once.
        """
        if (
            not explicit_confirmation
            or not self.enable_override
            or decision.action != DecisionAction.BLOCK
        ):
            return None

        prompt_id = decision.prompt.id
        if prompt_id in self._overridden:
            log.warning("override_already_used", prompt_id=prompt_id)
            return None
        self._remember_override(prompt_id)

        overridden = dataclasses.replace(
            decision,
            action=DecisionAction.ALLOW,
            overridden=True,
            reason=f"User override: {decision.reason}",
        )
        self._counts["override"] += 1

        await self._record(AuditEventKind.OVERRIDE, overridden)
        log_security_event(overridden, event_type="override")
        return overridden

    def _remember_override(self, prompt_id: str) -> None:
        self._overridden[prompt_id] = None
        if len(self._overridden) > self._max_tracked_overrides:
            keep = max(self._max_tracked_overrides // 2, 1)
            self._overridden = dict.fromkeys(list(self._overridden)[-keep:])

    async def _record(self, kind: AuditEventKind, decision: SecurityDecision) -> None:
        if not self.enable_audit or self._audit_sink is None:
            return
        event = AuditEvent(
            kind=kind,
            prompt_digest=decision.prompt.digest,
            threat_level=decision.analysis.threat_level,
            confidence=decision.analysis.confidence,
            action=decision.action,
            overridden=decision.overridden,
            processing_time_ms=decision.analysis.processing_time_ms,
        )
        await self._audit_sink.append(event)

    async def _notify(self, decision: SecurityDecision) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier(decision)
        except Exception as e:
            log.warning("notifier_failed", prompt_id=decision.prompt.id, error=str(e))
