"""Custom exceptions for cloak-gateway.

Every error the gateway anticipates surfaces as a :class:`CloakError` subclass
carrying a human-readable ``hint`` the host UI can show next to the message.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cloak_gateway.settings_manager import ConfigIssue


class CloakError(Exception):
    """Base exception for cloak-gateway."""

    hint: str = ""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class ClassifierUnavailableError(CloakError):
    """Raised when the remote classifier cannot be reached or answers non-2xx."""

    hint = "Check that the classifier endpoint is running; local detection stays active."

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Remote classifier unavailable: {reason}")


class QueueFullError(CloakError):
    """Raised synchronously when the admission queue is at capacity."""

    hint = "Wait for pending analyses to finish or raise queue_max_size."

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        super().__init__(f"Queue capacity exceeded (max {max_size} pending prompts)")


class QueueShutdownError(CloakError):
    """Raised when submitting to a stopped queue or when pending work is abandoned."""

    hint = "Initialize the gateway before submitting prompts."


class PromptTooLongError(CloakError):
    """Raised when a prompt exceeds the configured maximum length."""

    def __init__(self, length: int, max_length: int) -> None:
        self.length = length
        self.max_length = max_length
        super().__init__(
            f"Prompt length {length} exceeds the maximum of {max_length} characters",
            hint="Shorten the prompt or raise max_prompt_length.",
        )


class InvalidConfigurationError(CloakError):
    """Raised when a configuration change fails validation.

    The previously active configuration stays in effect.
    """

    def __init__(self, issues: list[ConfigIssue]) -> None:
        self.issues = issues
        lines = []
        for issue in issues:
            line = f"{issue.field}: {issue.message}"
            if issue.suggestion:
                line += f". {issue.suggestion}"
            lines.append(line)
        super().__init__(
            "Invalid configuration: " + "; ".join(lines),
            hint=issues[0].suggestion if issues and issues[0].suggestion else None,
        )


class PipelineError(CloakError):
    """Raised (via the submitter's future) when analysis fails unexpectedly."""

    hint = "The failure was recorded in the audit log; retry the prompt."

    def __init__(self, prompt_id: str, cause: BaseException) -> None:
        self.prompt_id = prompt_id
        self.cause = cause
        super().__init__(f"Analysis of {prompt_id} failed: {cause}")
