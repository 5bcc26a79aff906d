"""Prompt security package: local detection, remote classification, decisions.

Public API
----------
- :func:`detect` -- local pattern detection (no I/O)
- :class:`Prompt`, :class:`PromptSource` -- submitted prompts
- :class:`SecurityAnalysis`, :class:`SecurityDecision`, :class:`ThreatLevel` -- result types

The services themselves live in their modules (``classifier``, ``merge``,
``gatekeeper``, ``health``, ``pipeline``) and are composed by
:class:`cloak_gateway.gateway.Gateway`.
"""

from cloak_gateway.security.models import (
    Prompt,
    PromptSource,
    SecurityAnalysis,
    SecurityDecision,
    ThreatLevel,
)
from cloak_gateway.security.patterns import detect

__all__ = [
    "Prompt",
    "PromptSource",
    "SecurityAnalysis",
    "SecurityDecision",
    "ThreatLevel",
    "detect",
]
