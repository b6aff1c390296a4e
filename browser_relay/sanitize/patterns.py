"""Sensitive key and value patterns used by the payload sanitizer."""

import re
from typing import Iterable, List, Pattern, Tuple

REDACTED = "[REDACTED]"
TRUNCATION_MARKER = "...[TRUNCATED]"
MAX_DEPTH_MARKER = "[MAX_DEPTH]"
ANNOTATION_KEY = "__sanitizer__"

# Matched case-insensitively against mapping keys and header/cookie names
SENSITIVE_KEY_PATTERNS = [
    r"^(proxy-)?authorization$",
    r"^auth$",
    r"^x-auth",
    r"^(set-)?cookie$",
    r"token",
    r"secret",
    r"passw(or)?d|^pwd$",
    r"api[-_]?key",
    r"^session([-_]?id)?$|sessid|^sid$",
    r"jwt",
    r"credential",
    r"private[-_]?key",
]

COOKIE_RECORD_FIELDS = frozenset({"domain", "path", "httpOnly", "secure", "expires", "sameSite"})


class ValuePattern:
    """A pattern for secrets embedded in free text."""

    def __init__(self, name: str, pattern: str, replacement: str, description: str = ""):
        """Initialize value pattern.

        Args:
            name: Pattern name
            pattern: Regex pattern string
            replacement: Typed marker substituted for each match
            description: Human-readable description
        """
        self.name = name
        self.pattern = pattern
        self.replacement = replacement
        self.description = description
        self.regex: Pattern[str] = re.compile(pattern)

    def redact(self, text: str) -> Tuple[str, int]:
        """Replace every match; returns the new text and the match count."""
        return self.regex.subn(self.replacement, text)

    def __repr__(self) -> str:
        return f"ValuePattern({self.name!r})"


VALUE_PATTERNS: List[ValuePattern] = [
    ValuePattern(
        "jwt",
        r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+",
        "[JWT_TOKEN_REDACTED]",
        "JSON Web Token"
    ),
    ValuePattern(
        "api_key",
        r"\bsk-[A-Za-z0-9_-]{20,}",
        "[API_KEY_REDACTED]",
        "Secret API key with sk- prefix"
    ),
    ValuePattern(
        "aws_access_key",
        r"\bAKIA[0-9A-Z]{16}",
        "[AWS_KEY_REDACTED]",
        "AWS access key id"
    ),
    ValuePattern(
        "github_token",
        r"\bgh[pousr]_[A-Za-z0-9]{36,}",
        "[GITHUB_TOKEN_REDACTED]",
        "GitHub personal or app token"
    ),
    ValuePattern(
        "ssn",
        r"\b\d{3}-\d{2}-\d{4}\b",
        "[SSN_REDACTED]",
        "US social security number"
    ),
    ValuePattern(
        "credit_card",
        r"\b(?:\d{4}[ -]?){3}\d{4}\b",
        "[CREDIT_CARD_REDACTED]",
        "Payment card number"
    ),
]


def compile_key_patterns(extra: Iterable[str] = ()) -> List[Pattern[str]]:
    """Compile the sensitive key patterns plus any extra ones."""
    return [re.compile(pattern, re.IGNORECASE) for pattern in [*SENSITIVE_KEY_PATTERNS, *extra]]


DEFAULT_KEY_PATTERNS = compile_key_patterns()


def is_sensitive_key(key: str, patterns: Iterable[Pattern[str]] = DEFAULT_KEY_PATTERNS) -> bool:
    """Check whether a mapping key or header name names a secret."""
    return any(pattern.search(key) for pattern in patterns)


def redact_values(text: str, patterns: Iterable[ValuePattern] = VALUE_PATTERNS) -> Tuple[str, int]:
    """Apply every value pattern to a string."""
    total = 0
    for pattern in patterns:
        text, count = pattern.redact(text)
        total += count
    return text, total
