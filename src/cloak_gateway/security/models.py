"""Data models for the prompt security pipeline."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class ThreatLevel(StrEnum):
    """Classification outcome, ordered by severity."""

    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    DANGEROUS = "dangerous"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    ThreatLevel.SAFE: 0,
    ThreatLevel.SUSPICIOUS: 1,
    ThreatLevel.DANGEROUS: 2,
}


def more_severe(a: ThreatLevel, b: ThreatLevel) -> ThreatLevel:
    """Return the more severe of two threat levels (``a`` on ties)."""
    return b if b.rank > a.rank else a


class ThreatCategory(StrEnum):
    """Categories of detected threats."""

    RULE_BYPASS = "rule_bypass"
    SECRET_EXTRACTION = "secret_extraction"
    COMMAND_INJECTION = "command_injection"
    ROLE_MANIPULATION = "role_manipulation"


class Severity(StrEnum):
    """Severity of a single threat indicator."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PromptSource(StrEnum):
    """Where an intercepted prompt came from."""

    CHAT = "chat"
    COMMAND = "command"
    API = "api"


class DecisionAction(StrEnum):
    """Action taken for an analysed prompt."""

    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


class AuditEventKind(StrEnum):
    """Kinds of audit events."""

    ANALYSIS = "analysis"
    ALLOW = "allow"
    BLOCK = "block"
    WARN = "warn"
    OVERRIDE = "override"
    ERROR = "error"


class SensitivityLevel(StrEnum):
    """Named sensitivity profiles."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def content_digest(content: str) -> str:
    """SHA-256 hex digest of prompt content; the only form content is audited in."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Prompt:
    """A prompt submitted for analysis. Never modified once created."""

    id: str
    content: str
    created_at: datetime
    source: PromptSource = PromptSource.CHAT
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        content: str,
        source: PromptSource | str = PromptSource.CHAT,
        **metadata: Any,
    ) -> Prompt:
        return cls(
            id=f"prompt-{uuid.uuid4().hex}",
            content=content,
            created_at=datetime.now(UTC),
            source=PromptSource(source),
            metadata=dict(metadata),
        )

    @property
    def digest(self) -> str:
        return content_digest(self.content)


@dataclass(frozen=True)
class ThreatIndicator:
    """A single threat found in a prompt."""

    category: ThreatCategory
    matched_text: str
    severity: Severity
    description: str

    def to_dict(self) -> dict[str, str]:
        return {
            "category": self.category.value,
            "matched_text": self.matched_text,
            "severity": self.severity.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class LocalDetection:
    """Output of the local pattern detector."""

    indicators: tuple[ThreatIndicator, ...] = ()
    suggested_level: ThreatLevel = ThreatLevel.SAFE

    @property
    def has_threats(self) -> bool:
        return bool(self.indicators)

    @property
    def categories(self) -> list[ThreatCategory]:
        return [i.category for i in self.indicators]


@dataclass(frozen=True)
class SecurityAnalysis:
    """Final or intermediate classification of a prompt."""

    threat_level: ThreatLevel
    confidence: float
    indicators: tuple[ThreatIndicator, ...] = ()
    reasoning: str = ""
    processing_time_ms: int = 0

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        if self.processing_time_ms < 0:
            raise ValueError(
                f"processing_time_ms must be non-negative, got {self.processing_time_ms}"
            )

    @property
    def categories(self) -> list[ThreatCategory]:
        """Distinct indicator categories in first-seen order."""
        seen: list[ThreatCategory] = []
        for indicator in self.indicators:
            if indicator.category not in seen:
                seen.append(indicator.category)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "threat_level": self.threat_level.value,
            "confidence": self.confidence,
            "indicators": [i.to_dict() for i in self.indicators],
            "reasoning": self.reasoning,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass(frozen=True)
class SecurityDecision:
    """Policy decision for a prompt."""

    action: DecisionAction
    reason: str
    prompt: Prompt
    analysis: SecurityAnalysis
    overridden: bool = False

    @property
    def allowed(self) -> bool:
        return self.action != DecisionAction.BLOCK

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_id": self.prompt.id,
            "action": self.action.value,
            "reason": self.reason,
            "overridden": self.overridden,
            "analysis": self.analysis.to_dict(),
        }


@dataclass(frozen=True)
class AuditEvent:
    """A recorded security event. Carries a content digest, never content."""

    kind: AuditEventKind
    prompt_digest: str
    threat_level: ThreatLevel
    confidence: float
    action: DecisionAction | None = None
    overridden: bool | None = None
    processing_time_ms: int = 0
    id: str = field(default_factory=lambda: f"audit-{uuid.uuid4().hex}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "prompt_digest": self.prompt_digest,
            "threat_level": self.threat_level.value,
            "confidence": self.confidence,
            "action": self.action.value if self.action else None,
            "overridden": self.overridden,
            "processing_time_ms": self.processing_time_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        """Deserialize from a persisted dict."""
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            kind=AuditEventKind(data["kind"]),
            prompt_digest=data["prompt_digest"],
            threat_level=ThreatLevel(data["threat_level"]),
            confidence=float(data["confidence"]),
            action=DecisionAction(data["action"]) if data.get("action") else None,
            overridden=data.get("overridden"),
            processing_time_ms=int(data.get("processing_time_ms", 0)),
        )


@dataclass(frozen=True)
class StoredAnalysisResult:
    """Analysis summary kept alongside audit events (digest only)."""

    prompt_id: str
    prompt_digest: str
    source: PromptSource
    action: DecisionAction
    threat_level: ThreatLevel
    confidence: float
    categories: tuple[str, ...] = ()
    processing_time_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_decision(cls, decision: SecurityDecision) -> StoredAnalysisResult:
        return cls(
            prompt_id=decision.prompt.id,
            prompt_digest=decision.prompt.digest,
            source=decision.prompt.source,
            action=decision.action,
            threat_level=decision.analysis.threat_level,
            confidence=decision.analysis.confidence,
            categories=tuple(c.value for c in decision.analysis.categories),
            processing_time_ms=decision.analysis.processing_time_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_id": self.prompt_id,
            "prompt_digest": self.prompt_digest,
            "source": self.source.value,
            "action": self.action.value,
            "threat_level": self.threat_level.value,
            "confidence": self.confidence,
            "categories": list(self.categories),
            "processing_time_ms": self.processing_time_ms,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SensitivityProfile:
    """Thresholds for the decision engine."""

    block_threshold: float
    warn_threshold: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.warn_threshold < self.block_threshold <= 1.0:
            raise ValueError(
                "thresholds must satisfy 0 <= warn < block <= 1, got "
                f"warn={self.warn_threshold} block={self.block_threshold}"
            )


SENSITIVITY_PROFILES: dict[SensitivityLevel, SensitivityProfile] = {
    SensitivityLevel.LOW: SensitivityProfile(block_threshold=0.9, warn_threshold=0.7),
    SensitivityLevel.MEDIUM: SensitivityProfile(block_threshold=0.7, warn_threshold=0.5),
    SensitivityLevel.HIGH: SensitivityProfile(block_threshold=0.5, warn_threshold=0.3),
}


def profile_for(level: SensitivityLevel | str) -> SensitivityProfile:
    """Look up the thresholds for a named sensitivity level."""
    return SENSITIVITY_PROFILES[SensitivityLevel(level)]
