"""Redaction of sensitive substrings in command output.

Applied to stdout/stderr before anything is handed back to the agent.
Every replacement is a fixed point of its own pattern, so redacting
already-redacted text changes nothing.
"""

import re
from dataclasses import dataclass

REDACTED = "[REDACTED]"
REDACTED_PEM = "[REDACTED CERTIFICATE/KEY]"


@dataclass(frozen=True)
class RedactionRule:
    """A regex and the replacement applied to its matches."""

    pattern: re.Pattern
    replacement: str


DEFAULT_RULES: list[RedactionRule] = [
    # PEM blocks first, their bodies would otherwise be mangled piecemeal
    RedactionRule(
        re.compile(r"-----BEGIN[^-]+-----[\s\S]*?-----END[^-]+-----"),
        REDACTED_PEM,
    ),
    RedactionRule(
        re.compile(r"Bearer\s+[^\s]+", re.IGNORECASE),
        f"Bearer {REDACTED}",
    ),
    RedactionRule(
        re.compile(
            r"(password|passwd|secret|token|api[_-]?key|key|credential)s?"
            r"[\s:=]+[\"']?[^\s\"'\n]+[\"']?",
            re.IGNORECASE,
        ),
        rf"\1: {REDACTED}",
    ),
]


class Redactor:
    """Replaces credentials, bearer tokens and PEM blocks with placeholders."""

    def __init__(self, extra_patterns: list[str] | None = None):
        """Initialize redactor.

        Args:
            extra_patterns: Additional regexes whose matches become [REDACTED].
        """
        self.rules = list(DEFAULT_RULES)
        for pattern in extra_patterns or []:
            self.rules.append(RedactionRule(re.compile(pattern), REDACTED))

    def redact(self, text: str) -> str:
        if not text:
            return text
        for rule in self.rules:
            text = rule.pattern.sub(rule.replacement, text)
        return text


_default_redactor = Redactor()


def redact(text: str) -> str:
    """Redact sensitive substrings using the default rules."""
    return _default_redactor.redact(text)
