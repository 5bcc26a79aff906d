"""Unit tests for the decision engine."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from cloak_gateway.security.gatekeeper import ALLOW_REASON, Gatekeeper
from cloak_gateway.security.models import (
    SENSITIVITY_PROFILES,
    AuditEventKind,
    DecisionAction,
    Prompt,
    SecurityAnalysis,
    SensitivityLevel,
    SensitivityProfile,
    Severity,
    ThreatCategory,
    ThreatIndicator,
    ThreatLevel,
    profile_for,
)
from cloak_gateway.storage.audit import AuditStore

MEDIUM = profile_for("medium")


def _analysis(
    level: ThreatLevel,
    confidence: float,
    categories: tuple[ThreatCategory, ...] = (),
    reasoning: str = "Because.",
) -> SecurityAnalysis:
    return SecurityAnalysis(
        threat_level=level,
        confidence=confidence,
        indicators=tuple(
            ThreatIndicator(category=c, matched_text="x", severity=Severity.HIGH, description="")
            for c in categories
        ),
        reasoning=reasoning,
        processing_time_ms=3,
    )


@pytest.fixture
def prompt() -> Prompt:
    return Prompt.create("some prompt text")


class TestSensitivityProfiles:
    def test_table(self) -> None:
        assert SENSITIVITY_PROFILES[SensitivityLevel.LOW] == SensitivityProfile(0.9, 0.7)
        assert SENSITIVITY_PROFILES[SensitivityLevel.MEDIUM] == SensitivityProfile(0.7, 0.5)
        assert SENSITIVITY_PROFILES[SensitivityLevel.HIGH] == SensitivityProfile(0.5, 0.3)

    @pytest.mark.parametrize("block,warn", [(0.5, 0.5), (0.4, 0.6), (1.1, 0.5), (0.5, -0.1)])
    def test_invalid_thresholds_rejected(self, block: float, warn: float) -> None:
        with pytest.raises(ValueError):
            SensitivityProfile(block_threshold=block, warn_threshold=warn)

    def test_unknown_level(self) -> None:
        with pytest.raises(ValueError):
            profile_for("paranoid")


class TestDecide:
    def test_block_at_threshold(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        decision = gk.decide(
            _analysis(ThreatLevel.DANGEROUS, 0.7, (ThreatCategory.RULE_BYPASS,)), prompt
        )
        assert decision.action == DecisionAction.BLOCK
        assert decision.reason == "Detected patterns: rule_bypass. Because."

    def test_dangerous_below_block_threshold_warns(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        decision = gk.decide(_analysis(ThreatLevel.DANGEROUS, 0.69), prompt)
        assert decision.action == DecisionAction.WARN

    def test_dangerous_always_at_least_warn(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        decision = gk.decide(_analysis(ThreatLevel.DANGEROUS, 0.0), prompt)
        assert decision.action == DecisionAction.WARN

    def test_suspicious_at_warn_threshold(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        decision = gk.decide(
            _analysis(
                ThreatLevel.SUSPICIOUS,
                0.5,
                (ThreatCategory.ROLE_MANIPULATION, ThreatCategory.RULE_BYPASS),
            ),
            prompt,
        )
        assert decision.action == DecisionAction.WARN
        assert decision.reason == "Suspicious patterns: role_manipulation, rule_bypass. Because."

    def test_suspicious_below_warn_threshold_allows(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        decision = gk.decide(_analysis(ThreatLevel.SUSPICIOUS, 0.49), prompt)
        assert decision.action == DecisionAction.ALLOW
        assert decision.reason == ALLOW_REASON

    def test_suspicious_never_blocks(self, prompt: Prompt) -> None:
        gk = Gatekeeper(profile_for("high"))
        decision = gk.decide(_analysis(ThreatLevel.SUSPICIOUS, 1.0), prompt)
        assert decision.action == DecisionAction.WARN

    def test_safe_allows(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        decision = gk.decide(_analysis(ThreatLevel.SAFE, 1.0), prompt)
        assert decision.action == DecisionAction.ALLOW

    def test_warn_without_patterns_uses_reasoning(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        decision = gk.decide(_analysis(ThreatLevel.SUSPICIOUS, 0.6, reasoning="Odd."), prompt)
        assert decision.reason == "Odd."

    def test_deterministic(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        analysis = _analysis(ThreatLevel.DANGEROUS, 0.8, (ThreatCategory.COMMAND_INJECTION,))
        assert gk.decide(analysis, prompt) == gk.decide(analysis, prompt)

    def test_prompt_passed_through_unchanged(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        decision = gk.decide(_analysis(ThreatLevel.SAFE, 0.9), prompt)
        assert decision.prompt is prompt

    def test_set_profile_applies_to_next_decision(self, prompt: Prompt) -> None:
        gk = Gatekeeper(profile_for("low"))
        analysis = _analysis(ThreatLevel.DANGEROUS, 0.6)
        assert gk.decide(analysis, prompt).action == DecisionAction.WARN
        gk.set_profile(profile_for("high"))
        assert gk.decide(analysis, prompt).action == DecisionAction.BLOCK


class TestEnforce:
    @pytest.mark.asyncio
    async def test_one_audit_event_per_decision(self, prompt: Prompt) -> None:
        store = AuditStore()
        gk = Gatekeeper(MEDIUM, store)

        await gk.enforce(_analysis(ThreatLevel.SAFE, 0.9), prompt)
        await gk.enforce(_analysis(ThreatLevel.SUSPICIOUS, 0.6), prompt)
        await gk.enforce(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)

        kinds = [e.kind for e in store.events]
        assert kinds == [AuditEventKind.ALLOW, AuditEventKind.ANALYSIS, AuditEventKind.BLOCK]
        assert gk.decision_counts == {"allow": 1, "warn": 1, "block": 1, "override": 0}

    @pytest.mark.asyncio
    async def test_audit_event_has_digest_not_content(self, prompt: Prompt) -> None:
        store = AuditStore()
        gk = Gatekeeper(MEDIUM, store)
        await gk.enforce(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)

        event = store.events[0]
        assert event.prompt_digest == prompt.digest
        assert prompt.content not in str(event.to_dict())
        assert event.action == DecisionAction.BLOCK
        assert event.overridden is False

    @pytest.mark.asyncio
    async def test_audit_disabled(self, prompt: Prompt) -> None:
        store = AuditStore()
        gk = Gatekeeper(MEDIUM, store, enable_audit=False)
        await gk.enforce(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)
        assert store.events == []

    @pytest.mark.asyncio
    async def test_notifier_called_for_warn_and_block_only(self, prompt: Prompt) -> None:
        notifier = AsyncMock()
        gk = Gatekeeper(MEDIUM, notifier=notifier)

        await gk.enforce(_analysis(ThreatLevel.SAFE, 0.9), prompt)
        await gk.enforce(_analysis(ThreatLevel.SUSPICIOUS, 0.6), prompt)
        await gk.enforce(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)

        actions = [call.args[0].action for call in notifier.await_args_list]
        assert actions == [DecisionAction.WARN, DecisionAction.BLOCK]

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_propagate(self, prompt: Prompt) -> None:
        notifier = AsyncMock(side_effect=RuntimeError("ui gone"))
        gk = Gatekeeper(MEDIUM, notifier=notifier)
        decision = await gk.enforce(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)
        assert decision.action == DecisionAction.BLOCK


class TestOverride:
    @pytest.mark.asyncio
    async def test_confirmed_override(self, prompt: Prompt) -> None:
        store = AuditStore()
        gk = Gatekeeper(MEDIUM, store)
        blocked = await gk.enforce(
            _analysis(ThreatLevel.DANGEROUS, 0.9, (ThreatCategory.RULE_BYPASS,)), prompt
        )

        result = await gk.override(blocked, explicit_confirmation=True)

        assert result is not None
        assert result.action == DecisionAction.ALLOW
        assert result.overridden is True
        assert result.reason == f"User override: {blocked.reason}"
        assert result.prompt is prompt
        # Original decision is untouched
        assert blocked.action == DecisionAction.BLOCK
        assert store.events[-1].kind == AuditEventKind.OVERRIDE
        assert store.events[-1].overridden is True
        assert gk.decision_counts["override"] == 1

    @pytest.mark.asyncio
    async def test_override_is_one_shot(self, prompt: Prompt) -> None:
        store = AuditStore()
        gk = Gatekeeper(MEDIUM, store)
        blocked = await gk.enforce(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)

        first = await gk.override(blocked, explicit_confirmation=True)
        assert first is not None
        before = len(store.events)

        assert await gk.override(first, explicit_confirmation=True) is None
        assert len(store.events) == before

    @pytest.mark.asyncio
    async def test_same_blocked_decision_overridden_once(self, prompt: Prompt) -> None:
        store = AuditStore()
        gk = Gatekeeper(MEDIUM, store)
        blocked = await gk.enforce(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)

        assert await gk.override(blocked, explicit_confirmation=True) is not None
        assert await gk.override(blocked, explicit_confirmation=True) is None

        kinds = [e.kind for e in store.events]
        assert kinds.count(AuditEventKind.OVERRIDE) == 1
        assert gk.decision_counts["override"] == 1

    @pytest.mark.asyncio
    async def test_tracked_overrides_are_bounded(self) -> None:
        gk = Gatekeeper(MEDIUM, max_tracked_overrides=4)
        prompts = [Prompt.create(f"prompt {i}") for i in range(5)]
        for p in prompts:
            blocked = gk.decide(_analysis(ThreatLevel.DANGEROUS, 0.9), p)
            assert await gk.override(blocked, explicit_confirmation=True) is not None

        # The newest ids are still remembered after trimming
        latest = gk.decide(_analysis(ThreatLevel.DANGEROUS, 0.9), prompts[-1])
        assert await gk.override(latest, explicit_confirmation=True) is None
        assert gk.decision_counts["override"] == 5

    @pytest.mark.asyncio
    async def test_unconfirmed_override(self, prompt: Prompt) -> None:
        store = AuditStore()
        gk = Gatekeeper(MEDIUM, store)
        blocked = await gk.enforce(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)
        before = len(store.events)

        assert await gk.override(blocked, explicit_confirmation=False) is None
        assert len(store.events) == before

    @pytest.mark.asyncio
    async def test_override_of_warn_rejected(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM)
        warned = gk.decide(_analysis(ThreatLevel.SUSPICIOUS, 0.6), prompt)
        assert await gk.override(warned, explicit_confirmation=True) is None

    @pytest.mark.asyncio
    async def test_override_disabled(self, prompt: Prompt) -> None:
        gk = Gatekeeper(MEDIUM, enable_override=False)
        blocked = gk.decide(_analysis(ThreatLevel.DANGEROUS, 0.9), prompt)
        assert await gk.override(blocked, explicit_confirmation=True) is None
