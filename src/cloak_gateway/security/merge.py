"""Combine local pattern detection with the remote classification."""

from __future__ import annotations

from cloak_gateway.security.models import (
    LocalDetection,
    SecurityAnalysis,
    ThreatCategory,
    ThreatIndicator,
    ThreatLevel,
    more_severe,
)

CORROBORATION_BOOST = 0.1
LOCAL_OVER_SAFE_CONFIDENCE = 0.6
DEGRADED_CONFIDENCE_WITH_THREATS = 0.6
DEGRADED_CONFIDENCE_CLEAN = 0.3
DEGRADED_REASONING = "Remote analysis unavailable; local pattern detection only."


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def merge(
    local: LocalDetection,
    remote: SecurityAnalysis,
    processing_time_ms: int | None = None,
) -> SecurityAnalysis:
    """Merge a local detection with a remote analysis.

    The more severe level wins. Remote indicators take precedence per
    category; local indicators fill in categories the remote result missed.
    """
    indicators: list[ThreatIndicator] = []
    seen: set[ThreatCategory] = set()
    for indicator in remote.indicators:
        if indicator.category not in seen:
            indicators.append(indicator)
            seen.add(indicator.category)

    local_only = [i for i in local.indicators if i.category not in seen]
    indicators.extend(local_only)

    confidence = remote.confidence
    if local.has_threats:
        if remote.threat_level == ThreatLevel.SAFE:
            confidence = LOCAL_OVER_SAFE_CONFIDENCE
        else:
            confidence = min(1.0, confidence + CORROBORATION_BOOST)

    reasoning = remote.reasoning
    if local_only:
        names = ", ".join(i.category.value for i in local_only)
        reasoning = f"{reasoning} Local detection also identified: {names}."

    return SecurityAnalysis(
        threat_level=more_severe(local.suggested_level, remote.threat_level),
        confidence=_clamp(confidence),
        indicators=tuple(indicators),
        reasoning=reasoning,
        processing_time_ms=(
            remote.processing_time_ms if processing_time_ms is None else processing_time_ms
        ),
    )


def degraded_analysis(local: LocalDetection, processing_time_ms: int = 0) -> SecurityAnalysis:
    """Analysis built from local detection alone, at reduced confidence."""
    return SecurityAnalysis(
        threat_level=local.suggested_level,
        confidence=(
            DEGRADED_CONFIDENCE_WITH_THREATS if local.has_threats else DEGRADED_CONFIDENCE_CLEAN
        ),
        indicators=local.indicators,
        reasoning=DEGRADED_REASONING,
        processing_time_ms=processing_time_ms,
    )
