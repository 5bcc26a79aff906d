"""Forensic logging for security decisions.

Records carry the SHA-256 digest and length of the prompt, never its text.
"""

from __future__ import annotations

from cloak_gateway.logging import get_logger
from cloak_gateway.security.models import DecisionAction, SecurityDecision

log = get_logger("cloak_gateway.security.forensics")


def log_security_event(decision: SecurityDecision, *, event_type: str = "decision") -> None:
    """Log a forensic record for a security decision."""
    analysis = decision.analysis
    fields = dict(
        event_type=event_type,
        prompt_id=decision.prompt.id,
        source=decision.prompt.source.value,
        action=decision.action.value,
        overridden=decision.overridden,
        threat_level=analysis.threat_level.value,
        confidence=round(analysis.confidence, 4),
        indicator_count=len(analysis.indicators),
        indicators=[
            {
                "category": i.category.value,
                "severity": i.severity.value,
            }
            for i in analysis.indicators
        ],
        content_hash=decision.prompt.digest,
        content_length=len(decision.prompt.content),
        processing_ms=analysis.processing_time_ms,
    )

    if decision.action == DecisionAction.ALLOW and not decision.overridden:
        log.info("security_event", **fields)
    else:
        log.warning("security_event", **fields)
