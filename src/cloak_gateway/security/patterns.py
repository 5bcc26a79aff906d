"""Local pattern detection.

Synchronous, side-effect free and fast enough to run on every prompt before
the remote classifier is consulted. Each category is a flat tuple of compiled
regexes; only the first match per category becomes an indicator.
"""

from __future__ import annotations

import re

from cloak_gateway.security.models import (
    LocalDetection,
    Severity,
    ThreatCategory,
    ThreatIndicator,
    ThreatLevel,
)

_I = re.IGNORECASE

# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

_RULE_BYPASS_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Ignore / disregard / forget instructions
    re.compile(
        r"ignore\s+(?:all\s+)?(?:previous|prior|above|earlier)\s+"
        r"(?:instructions?|rules?|prompts?|guidelines?|constraints?)",
        _I,
    ),
    re.compile(r"disregard\s+(?:all\s+)?(?:previous|prior|above|earlier)\s+(?:instructions?|rules?|prompts?)", _I),
    re.compile(r"forget\s+(?:all\s+)?(?:previous|prior|above|earlier)\s+(?:instructions?|rules?|prompts?)", _I),
    # Override attempts
    re.compile(r"override\s+(?:all\s+)?(?:safety|security|system)\s*(?:rules?|settings?|restrictions?)?", _I),
    re.compile(r"bypass\s+(?:all\s+)?(?:safety|security|system)\s*(?:rules?|checks?|filters?)?", _I),
    re.compile(r"disable\s+(?:all\s+)?(?:safety|security|content)\s*(?:filters?|checks?|restrictions?)?", _I),
    # New instruction injection
    re.compile(r"new\s+(?:system\s+)?instructions?:\s*", _I),
    re.compile(r"updated?\s+(?:system\s+)?prompt:\s*", _I),
    re.compile(r"system\s*:\s*you\s+(?:are|will|must|should)", _I),
    # Jailbreaks
    re.compile(r"jailbreak", _I),
    re.compile(r"dan\s*mode", _I),
    re.compile(r"developer\s*mode\s*(?:enabled|activated|on)", _I),
    # Context reset
    re.compile(r"reset\s+(?:your\s+)?(?:context|memory|instructions?)", _I),
    re.compile(r"clear\s+(?:your\s+)?(?:context|memory|instructions?)", _I),
    # Typoglycemia (scrambled words)
    re.compile(r"ignroe|igrore|ignreo", _I),
    re.compile(r"insturctions?|instrucitns?|intructions?", _I),
    re.compile(r"previosu|previuos|preivous", _I),
)

_SECRET_EXTRACTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    # System prompt requests
    re.compile(r"reveal\s+(?:your\s+)?(?:system\s+)?prompt", _I),
    re.compile(r"show\s+(?:me\s+)?(?:your\s+)?(?:system\s+)?prompt", _I),
    re.compile(r"what\s+(?:is|are)\s+(?:your\s+)?(?:system\s+)?(?:prompt|instructions?)", _I),
    re.compile(r"print\s+(?:your\s+)?(?:system\s+)?prompt", _I),
    re.compile(r"output\s+(?:your\s+)?(?:system\s+)?prompt", _I),
    re.compile(r"display\s+(?:your\s+)?(?:system\s+)?prompt", _I),
    # Keys and credentials
    re.compile(r"reveal\s+(?:your\s+)?(?:api\s*keys?|secrets?|credentials?|tokens?|passwords?)", _I),
    re.compile(r"show\s+(?:me\s+)?(?:your\s+)?(?:api\s*keys?|secrets?|credentials?|tokens?)", _I),
    re.compile(r"what\s+(?:is|are)\s+(?:your\s+)?(?:api\s*keys?|secrets?|credentials?)", _I),
    re.compile(r"extract\s+(?:the\s+)?(?:api\s*keys?|secrets?|credentials?|tokens?)", _I),
    re.compile(r"leak\s+(?:the\s+)?(?:api\s*keys?|secrets?|credentials?|tokens?)", _I),
    # Environment variables
    re.compile(r"print\s+(?:all\s+)?env(?:ironment)?\s*(?:vars?|variables?)?", _I),
    re.compile(r"show\s+(?:all\s+)?env(?:ironment)?\s*(?:vars?|variables?)?", _I),
    re.compile(r"list\s+(?:all\s+)?env(?:ironment)?\s*(?:vars?|variables?)?", _I),
    re.compile(r"\$\{?[A-Z_]+_KEY\}?", _I),
    re.compile(r"\$\{?[A-Z_]+_SECRET\}?", _I),
    re.compile(r"\$\{?[A-Z_]+_TOKEN\}?", _I),
    # Internal configuration
    re.compile(r"internal\s+(?:config|configuration|settings)", _I),
    re.compile(r"hidden\s+(?:config|configuration|settings|instructions?)", _I),
    re.compile(r"confidential\s+(?:data|information|config)", _I),
)

_COMMAND_INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Shell execution
    re.compile(r"execute\s+(?:this\s+)?(?:shell|bash|cmd|command|script)", _I),
    re.compile(r"run\s+(?:this\s+)?(?:shell|bash|cmd|command|script)", _I),
    re.compile(r"eval\s*\(", _I),
    re.compile(r"exec\s*\(", _I),
    re.compile(r"system\s*\(", _I),
    re.compile(r"spawn\s*\(", _I),
    re.compile(r"popen\s*\(", _I),
    # Dangerous commands
    re.compile(r"\brm\s+-rf\s+[/~]", _I),
    re.compile(r"\bsudo\s+", _I),
    re.compile(r"\bchmod\s+777", _I),
    re.compile(r"\bchown\s+", _I),
    # Pipe-to-shell; the gap is bounded so repeated openers stay linear
    re.compile(r"\bcurl\s+[^\n]{0,200}\|\s*(?:ba)?sh", _I),
    re.compile(r"\bwget\s+[^\n]{0,200}\|\s*(?:ba)?sh", _I),
    # Reverse shells
    re.compile(r"\bnc\s+-[elp]", _I),
    re.compile(r"/dev/tcp/", _I),
    re.compile(r"bash\s+-i\s+>&", _I),
    re.compile(r"mkfifo", _I),
    # Filesystem writes and reads
    re.compile(r">\s*/etc/", _I),
    re.compile(r">\s*~/\.", _I),
    re.compile(r"cat\s+/etc/(?:passwd|shadow)", _I),
    # Chained destructive commands
    re.compile(r";\s*(?:rm|del|format|shutdown|reboot)", _I),
    re.compile(r"&&\s*(?:rm|del|format|shutdown|reboot)", _I),
    re.compile(r"\|\s*(?:rm|del|format|shutdown|reboot)", _I),
    # SQL injection
    re.compile(r"'\s*(?:or|and)\s+['\"]?1['\"]?\s*=\s*['\"]?1", _I),
    re.compile(r";\s*drop\s+(?:table|database)", _I),
    re.compile(r"union\s+select", _I),
    re.compile(r"--\s*$", re.MULTILINE),
)

_ROLE_MANIPULATION_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Direct role changes
    re.compile(r"you\s+are\s+now\s+(?:a|an|the)\b", _I),
    re.compile(r"act\s+as\s+(?:a|an|if\s+you\s+were)\b", _I),
    re.compile(r"pretend\s+(?:to\s+be|you\s+are)", _I),
    re.compile(r"roleplay\s+as", _I),
    re.compile(r"imagine\s+you\s+are", _I),
    re.compile(r"from\s+now\s+on,?\s+you\s+(?:are|will)", _I),
    re.compile(r"let'?s\s+play\s+a\s+game", _I),
    # Persona injection
    re.compile(r"your\s+new\s+(?:name|identity|persona)\s+is", _I),
    re.compile(r"you\s+will\s+respond\s+as", _I),
    re.compile(r"speak\s+as\s+if\s+you\s+were", _I),
    re.compile(r"answer\s+as\s+(?:a|an|the)\b", _I),
    # Behaviour modification
    re.compile(r"you\s+must\s+(?:always|never)\s+", _I),
    re.compile(r"you\s+will\s+(?:always|never)\s+", _I),
    re.compile(r"your\s+only\s+purpose\s+is", _I),
    re.compile(r"your\s+primary\s+(?:goal|objective|function)\s+is\s+now", _I),
    # Mode switches, bounded gap as above
    re.compile(r"switch\s+to\s+[^\n]{0,60}\s+mode", _I),
    re.compile(r"enable\s+[^\n]{0,60}\s+mode", _I),
    re.compile(r"activate\s+[^\n]{0,60}\s+mode", _I),
    re.compile(r"enter\s+[^\n]{0,60}\s+mode", _I),
)

# (category, rules, severity, description)
RULE_TABLES: tuple[tuple[ThreatCategory, tuple[re.Pattern[str], ...], Severity, str], ...] = (
    (
        ThreatCategory.RULE_BYPASS,
        _RULE_BYPASS_PATTERNS,
        Severity.HIGH,
        "Attempt to bypass or ignore system rules and instructions",
    ),
    (
        ThreatCategory.SECRET_EXTRACTION,
        _SECRET_EXTRACTION_PATTERNS,
        Severity.HIGH,
        "Attempt to extract system secrets, API keys, or sensitive configuration",
    ),
    (
        ThreatCategory.COMMAND_INJECTION,
        _COMMAND_INJECTION_PATTERNS,
        Severity.HIGH,
        "Attempt to execute unauthorized system commands or inject malicious code",
    ),
    (
        ThreatCategory.ROLE_MANIPULATION,
        _ROLE_MANIPULATION_PATTERNS,
        Severity.MEDIUM,
        "Attempt to manipulate AI role or behavior through persona injection",
    ),
)

_RULES_BY_CATEGORY = {category: rules for category, rules, _, _ in RULE_TABLES}


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def detect(content: str) -> LocalDetection:
    """Run every rule table against ``content``.

    At most one indicator is produced per category (the first rule that
    matches, in table order).
    """
    indicators: list[ThreatIndicator] = []
    for category, rules, severity, description in RULE_TABLES:
        for rule in rules:
            m = rule.search(content)
            if m:
                indicators.append(
                    ThreatIndicator(
                        category=category,
                        matched_text=m.group(0),
                        severity=severity,
                        description=description,
                    )
                )
                break

    return LocalDetection(
        indicators=tuple(indicators),
        suggested_level=derive_level(indicators),
    )


def derive_level(indicators: list[ThreatIndicator] | tuple[ThreatIndicator, ...]) -> ThreatLevel:
    """Map a set of indicators to a threat level."""
    if not indicators:
        return ThreatLevel.SAFE

    high_count = sum(1 for i in indicators if i.severity == Severity.HIGH)
    distinct_categories = len({i.category for i in indicators})

    # Multiple high-severity hits or a broad spread of categories
    if high_count >= 2 or distinct_categories >= 3:
        return ThreatLevel.DANGEROUS
    # A single high-severity hit is enough to escalate
    if high_count >= 1:
        return ThreatLevel.DANGEROUS
    return ThreatLevel.SUSPICIOUS


def detects(category: ThreatCategory | str, content: str) -> bool:
    """Check a single category's rules against ``content``."""
    rules = _RULES_BY_CATEGORY[ThreatCategory(category)]
    return any(rule.search(content) for rule in rules)
