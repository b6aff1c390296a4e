"""Redaction, truncation and de-duplication of outbound payloads."""

from .patterns import (
    ANNOTATION_KEY,
    MAX_DEPTH_MARKER,
    REDACTED,
    TRUNCATION_MARKER,
    VALUE_PATTERNS,
    is_sensitive_key,
    redact_values,
)
from .sanitizer import PayloadSanitizer, SanitizedArtifact, SanitizerLimits, sanitize

__all__ = [
    'ANNOTATION_KEY',
    'MAX_DEPTH_MARKER',
    'PayloadSanitizer',
    'REDACTED',
    'SanitizedArtifact',
    'SanitizerLimits',
    'TRUNCATION_MARKER',
    'VALUE_PATTERNS',
    'is_sensitive_key',
    'redact_values',
    'sanitize',
]
