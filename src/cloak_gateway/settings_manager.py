"""Runtime configuration service.

Holds the active, validated :class:`Settings` snapshot and pushes typed change
events to subscribers. Changes are applied atomically: a change set that
fails validation raises :class:`InvalidConfigurationError` and the previous
snapshot stays active.

Usage::

    service = ConfigurationService()
    unsubscribe = service.subscribe(on_change)
    service.update(threat_sensitivity="high")
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from cloak_gateway.config import Settings, get_settings
from cloak_gateway.exceptions import InvalidConfigurationError
from cloak_gateway.logging import get_logger
from cloak_gateway.security.models import SensitivityProfile, profile_for

log = get_logger("cloak_gateway.settings_manager")

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")
_PROMPT_KEYWORDS = ("safe", "dangerous", "threat", "security")
_LONG_TIMEOUT_MS = 120000
_LARGE_PROMPT_LENGTH = 100000
_SHORT_SYSTEM_PROMPT = 50

_SUGGESTIONS = {
    "threat_sensitivity": 'Use one of: "low", "medium", or "high"',
    "classifier_timeout_ms": "Set the timeout to at least 1000ms (1 second) for reliable operation",
    "max_prompt_length": "Set max_prompt_length to at least 100 characters",
    "classifier_endpoint": 'Provide a valid http:// or https:// URL (e.g., "http://localhost:1234/v1")',
    "classifier_model": "Set the model name served by the classifier endpoint",
    "system_prompt": "Provide a system prompt for security classification or use the default",
    "queue_max_size": "Allow at least one pending prompt",
    "idle_check_interval_ms": "Use an interval of at least 100ms",
    "metrics_retention_count": "Retain at least 10 metrics",
    "audit_max_entries": "Retain at least 10 audit entries",
    "audit_rotation_threshold": "Use a fraction between 0 (exclusive) and 1",
    "health_probe_interval_seconds": "Probe at least once per second or less often",
}


@dataclass(frozen=True)
class ConfigIssue:
    """A field-qualified validation error or warning."""

    field: str
    message: str
    suggestion: str | None = None


@dataclass
class ValidationResult:
    errors: list[ConfigIssue] = field(default_factory=list)
    warnings: list[ConfigIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class ConfigurationChangeEvent:
    """Pushed to subscribers after a successful update."""

    affected_keys: frozenset[str]
    old: Settings
    new: Settings

    def affects(self, *keys: str) -> bool:
        return any(k in self.affected_keys for k in keys)


ConfigListener = Callable[[ConfigurationChangeEvent], None]


def _collect_warnings(settings: Settings) -> list[ConfigIssue]:
    warnings: list[ConfigIssue] = []

    if settings.classifier_timeout_ms > _LONG_TIMEOUT_MS:
        warnings.append(
            ConfigIssue(
                "classifier_timeout_ms",
                f"Timeout is very long: {settings.classifier_timeout_ms}ms "
                f"({settings.classifier_timeout_ms / 1000:g}s). This may cause delays.",
            )
        )

    if settings.max_prompt_length > _LARGE_PROMPT_LENGTH:
        warnings.append(
            ConfigIssue(
                "max_prompt_length",
                f"Max prompt length is very large: {settings.max_prompt_length}. "
                "This may impact performance.",
            )
        )

    host = urlparse(settings.classifier_endpoint).hostname
    if host not in _LOCAL_HOSTS:
        warnings.append(
            ConfigIssue(
                "classifier_endpoint",
                f"Non-local endpoint detected: {host}. Prompts will leave this machine.",
            )
        )

    prompt = settings.system_prompt
    if len(prompt) < _SHORT_SYSTEM_PROMPT:
        warnings.append(
            ConfigIssue(
                "system_prompt",
                "System prompt is very short. This may reduce classification accuracy.",
            )
        )
    if not any(k in prompt.lower() for k in _PROMPT_KEYWORDS):
        warnings.append(
            ConfigIssue(
                "system_prompt",
                "System prompt may not be optimized for security classification. "
                "Consider including threat detection instructions.",
            )
        )

    return warnings


class ConfigurationService:
    """Validated, observable configuration."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._listeners: list[ConfigListener] = []

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def sensitivity_profile(self) -> SensitivityProfile:
        return profile_for(self._settings.threat_sensitivity)

    def validate(self, changes: dict[str, Any] | None = None) -> ValidationResult:
        """Validate the current settings with ``changes`` applied.

        Nothing is applied; see :meth:`update`.
        """
        result = ValidationResult()
        changes = changes or {}

        known = set(Settings.model_fields)
        for key in changes:
            if key not in known:
                result.errors.append(
                    ConfigIssue(key, "Unknown configuration key", "Check the setting name")
                )
        if result.errors:
            return result

        try:
            candidate = self._build(changes)
        except ValidationError as e:
            for err in e.errors():
                name = str(err["loc"][0]) if err["loc"] else "settings"
                message = err["msg"].removeprefix("Value error, ")
                result.errors.append(ConfigIssue(name, message, _SUGGESTIONS.get(name)))
            return result

        result.warnings.extend(_collect_warnings(candidate))
        return result

    def update(self, **changes: Any) -> Settings:
        """Apply ``changes`` atomically and notify subscribers.

        Raises:
            InvalidConfigurationError: If validation fails. The previous
                settings stay active.
        """
        result = self.validate(changes)
        if not result.is_valid:
            log.warning(
                "configuration_rejected",
                errors=[f"{i.field}: {i.message}" for i in result.errors],
            )
            raise InvalidConfigurationError(result.errors)

        for warning in result.warnings:
            log.warning("configuration_warning", field=warning.field, message=warning.message)

        new = self._build(changes)
        return self._apply(new)

    def reload(self) -> Settings:
        """Re-read settings from the environment and notify subscribers."""
        get_settings.cache_clear()
        return self._apply(get_settings())

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _build(self, changes: dict[str, Any]) -> Settings:
        data = self._settings.model_dump()
        data.update(changes)
        return Settings.model_validate(data)

    def _apply(self, new: Settings) -> Settings:
        old = self._settings
        old_values = old.model_dump()
        new_values = new.model_dump()
        affected = frozenset(k for k in new_values if old_values.get(k) != new_values[k])

        self._settings = new
        if not affected:
            return new

        log.info("configuration_updated", keys=sorted(affected))
        event = ConfigurationChangeEvent(affected_keys=affected, old=old, new=new)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("configuration_listener_failed")
        return new
