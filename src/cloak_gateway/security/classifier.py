"""Remote classifier client.

Talks to an OpenAI-compatible ``/chat/completions`` endpoint (LM Studio,
Ollama's OpenAI shim, vLLM, ...) and normalizes whatever comes back into a
:class:`SecurityAnalysis`. Malformed replies never raise; transport failures
and non-2xx responses raise :class:`ClassifierUnavailableError` so the caller
can fall back to degraded mode. No retries are attempted here.
"""

from __future__ import annotations

import json
import math
import re
import time
from typing import Any

import httpx

from cloak_gateway.config import get_settings
from cloak_gateway.exceptions import ClassifierUnavailableError
from cloak_gateway.logging import get_logger
from cloak_gateway.prompts import HEALTH_PROBE_PROMPT
from cloak_gateway.security.models import (
    SecurityAnalysis,
    Severity,
    ThreatCategory,
    ThreatIndicator,
    ThreatLevel,
)

log = get_logger("cloak_gateway.security.classifier")

PARSE_FAILURE_REASONING = "Failed to parse security analysis response"
NO_REASONING = "No reasoning provided"
TEMPERATURE = 0.3
PROBE_TIMEOUT_SECONDS = 5.0

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def _normalize_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0.5
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        return 0.5
    return float(value)


def _normalize_indicator(entry: dict[str, Any]) -> ThreatIndicator:
    try:
        category = ThreatCategory(entry.get("type"))
    except ValueError:
        category = ThreatCategory.RULE_BYPASS
    try:
        severity = Severity(entry.get("severity"))
    except ValueError:
        severity = Severity.MEDIUM
    pattern = entry.get("pattern")
    description = entry.get("description")
    return ThreatIndicator(
        category=category,
        matched_text=pattern if isinstance(pattern, str) else "",
        severity=severity,
        description=description if isinstance(description, str) else "",
    )


def _parse_failure(processing_time_ms: int) -> SecurityAnalysis:
    return SecurityAnalysis(
        threat_level=ThreatLevel.SUSPICIOUS,
        confidence=0.5,
        indicators=(),
        reasoning=PARSE_FAILURE_REASONING,
        processing_time_ms=processing_time_ms,
    )


def parse_classification(text: str | None, processing_time_ms: int = 0) -> SecurityAnalysis:
    """Normalize a classifier reply into a :class:`SecurityAnalysis`.

    Every field falls back to a safe default when missing or malformed:

    * unknown ``threatLevel`` becomes ``suspicious``
    * ``confidence`` outside ``[0, 1]`` (or not a number) becomes ``0.5``
    * unknown pattern ``type`` becomes ``rule_bypass``, unknown ``severity``
      becomes ``medium``; non-object entries are dropped

    Empty or unparseable text yields ``suspicious`` at ``0.5``.
    """
    if not text or not text.strip():
        return _parse_failure(processing_time_ms)

    try:
        data = json.loads(_strip_code_fences(text))
    except json.JSONDecodeError:
        log.warning("classifier_response_unparseable", length=len(text))
        return _parse_failure(processing_time_ms)

    if not isinstance(data, dict):
        return _parse_failure(processing_time_ms)

    try:
        threat_level = ThreatLevel(data.get("threatLevel"))
    except ValueError:
        threat_level = ThreatLevel.SUSPICIOUS

    patterns = data.get("detectedPatterns")
    if not isinstance(patterns, list):
        patterns = []
    indicators = tuple(_normalize_indicator(p) for p in patterns if isinstance(p, dict))

    reasoning = data.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning:
        reasoning = NO_REASONING

    return SecurityAnalysis(
        threat_level=threat_level,
        confidence=_normalize_confidence(data.get("confidence")),
        indicators=indicators,
        reasoning=reasoning,
        processing_time_ms=processing_time_ms,
    )


def _extract_message_content(body: Any) -> str | None:
    """Pull ``choices[0].message.content`` out of a chat completion body."""
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


class RemoteClassifier:
    """Client for the remote prompt classification service."""

    def __init__(
        self,
        endpoint: str | None = None,
        model: str | None = None,
        timeout_ms: int | None = None,
        system_prompt: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if None in (endpoint, model, timeout_ms, system_prompt):
            settings = get_settings()
            endpoint = endpoint if endpoint is not None else settings.classifier_endpoint
            model = model if model is not None else settings.classifier_model
            if timeout_ms is None:
                timeout_ms = settings.classifier_timeout_ms
            if system_prompt is None:
                system_prompt = settings.system_prompt
        self._endpoint = endpoint.rstrip("/")
        self._model = model
        self._timeout_ms = timeout_ms
        self._system_prompt = system_prompt
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_ms / 1000.0

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def classify(self, content: str, system_prompt: str | None = None) -> SecurityAnalysis:
        """Classify a prompt with the remote service.

        Args:
            content: The prompt text.
            system_prompt: Override for the configured classification prompt.

        Returns:
            The normalized analysis. Malformed replies are normalized, never raised.

        Raises:
            ClassifierUnavailableError: On connection failure, timeout or a
                non-2xx status.
        """
        start = time.perf_counter()
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt or self._system_prompt},
                {"role": "user", "content": content},
            ],
            "temperature": TEMPERATURE,
            "stream": False,
        }

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self._endpoint}/chat/completions",
                json=payload,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            log.warning("classifier_timeout", endpoint=self._endpoint, error=str(e))
            raise ClassifierUnavailableError(
                f"request timed out after {self._timeout_ms}ms"
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.warning("classifier_http_error", endpoint=self._endpoint, status=status)
            raise ClassifierUnavailableError(
                f"HTTP {status} from {self._endpoint}", status_code=status
            ) from e
        except httpx.RequestError as e:
            log.warning("classifier_request_failed", endpoint=self._endpoint, error=str(e))
            raise ClassifierUnavailableError(str(e) or type(e).__name__) from e

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        try:
            body = response.json()
        except ValueError:
            body = None

        analysis = parse_classification(_extract_message_content(body), elapsed_ms)
        log.debug(
            "classifier_analysis_complete",
            threat_level=analysis.threat_level.value,
            confidence=analysis.confidence,
            indicators=len(analysis.indicators),
            duration_ms=elapsed_ms,
        )
        return analysis

    async def probe(self) -> bool:
        """Send a minimal request; True only on HTTP 200. Never raises."""
        try:
            client = await self._get_client()
            response = await client.post(
                f"{self._endpoint}/chat/completions",
                json={
                    "model": self._model,
                    "messages": [{"role": "user", "content": HEALTH_PROBE_PROMPT}],
                    "max_tokens": 1,
                },
                timeout=PROBE_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            log.debug("classifier_probe_failed", endpoint=self._endpoint, error=str(e))
            return False
        return response.status_code == 200

    def update_endpoint(self, endpoint: str) -> None:
        self._endpoint = endpoint.rstrip("/")
        log.info("classifier_endpoint_updated", endpoint=self._endpoint)

    def update_timeout(self, timeout_ms: int) -> None:
        self._timeout_ms = timeout_ms
        log.info("classifier_timeout_updated", timeout_ms=timeout_ms)

    def update_system_prompt(self, system_prompt: str) -> None:
        self._system_prompt = system_prompt
        log.info("classifier_system_prompt_updated", length=len(system_prompt))

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
