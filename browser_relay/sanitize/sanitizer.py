"""Payload sanitizer.

Every payload leaving the relay passes through PayloadSanitizer, which
applies, in order: redaction of secrets, string truncation, collection
caps and de-duplication of structurally identical list entries. Counts
of removed items are recorded in a trailing ``__sanitizer__`` annotation
so the caller can tell the data was reduced.

Sanitizing an already sanitized payload with the same limits returns it
unchanged: markers and annotations are recognised and merged instead of
being applied again.
"""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from pydantic import BaseModel

from ..errors import SanitizationDegraded
from ..models import ArtifactKind, CapturedArtifact
from .patterns import (
    ANNOTATION_KEY,
    COOKIE_RECORD_FIELDS,
    MAX_DEPTH_MARKER,
    REDACTED,
    TRUNCATION_MARKER,
    compile_key_patterns,
    is_sensitive_key,
    redact_values,
)

logger = logging.getLogger(__name__)

DEFAULT_VOLATILE_KEYS = frozenset({"timestamp", "time", "requestId", "correlationId"})


@dataclass
class SanitizerLimits:
    """Bounds applied by the sanitizer."""
    max_string_length: int = 500
    max_collection_items: int = 50
    max_duplicate_samples: int = 10
    max_depth: int = 10
    redact_value_patterns: bool = True
    sensitive_keys: Sequence[str] = ()
    volatile_keys: frozenset = DEFAULT_VOLATILE_KEYS

    @classmethod
    def from_settings(cls, settings: Any) -> "SanitizerLimits":
        """Build limits from a SanitizerSettings config section."""
        return cls(
            max_string_length=settings.max_string_length,
            max_collection_items=settings.max_collection_items,
            max_duplicate_samples=settings.max_duplicate_samples,
            max_depth=settings.max_depth,
            redact_value_patterns=settings.redact_value_patterns,
            sensitive_keys=tuple(settings.extra_sensitive_keys)
        )


@dataclass
class SanitizedArtifact:
    """Result of sanitizing one artifact."""
    kind: ArtifactKind
    data: Any
    degraded: bool = False
    notice: Optional[SanitizationDegraded] = None
    redacted: int = 0
    truncated: int = 0
    dropped: int = 0
    collapsed: int = 0

    @property
    def warnings(self) -> List[str]:
        if self.notice is None:
            return []
        reasons = "; ".join(self.notice.reasons)
        return [f"{self.notice.message}: {reasons}" if reasons else self.notice.message]


@dataclass
class _PassState:
    redacted: int = 0
    truncated: int = 0
    dropped: int = 0
    collapsed: int = 0
    reasons: List[str] = field(default_factory=list)

    def degrade(self, reason: str) -> None:
        if reason not in self.reasons:
            self.reasons.append(reason)


def _annotation_counts(value: Any) -> Optional[Tuple[int, int]]:
    """Return (dropped, collapsed) if value is a sanitizer annotation."""
    if not isinstance(value, Mapping) or set(value.keys()) != {ANNOTATION_KEY}:
        return None
    counts = value[ANNOTATION_KEY]
    if not isinstance(counts, Mapping):
        return None
    return int(counts.get("dropped", 0) or 0), int(counts.get("collapsed", 0) or 0)


class PayloadSanitizer:
    """Redacts, truncates and caps payloads. Never raises."""

    def __init__(self, limits: Optional[SanitizerLimits] = None):
        self.limits = limits or SanitizerLimits()
        self._key_patterns: List[Pattern[str]] = compile_key_patterns(self.limits.sensitive_keys)

    def sanitize(self, artifact: Any, kind: ArtifactKind = ArtifactKind.OTHER) -> SanitizedArtifact:
        """Sanitize a CapturedArtifact or a raw payload.

        Args:
            artifact: CapturedArtifact, or any payload value
            kind: Kind recorded for raw payloads

        Returns:
            SanitizedArtifact carrying the cleaned data and counters
        """
        if isinstance(artifact, CapturedArtifact):
            kind = artifact.kind
            payload = artifact.payload
        else:
            payload = artifact

        state = _PassState()
        try:
            data = self._clean(payload, 0, state)
        except Exception as e:
            logger.warning(f"Sanitizer fell back to string form for {kind.value} payload: {e!r}")
            state.degrade(f"fallback to string form ({type(e).__name__})")
            data = self._clean_string(self._safe_str(payload), state)

        notice = None
        if state.reasons:
            notice = SanitizationDegraded(reasons=list(state.reasons))

        return SanitizedArtifact(
            kind=kind,
            data=data,
            degraded=bool(state.reasons),
            notice=notice,
            redacted=state.redacted,
            truncated=state.truncated,
            dropped=state.dropped,
            collapsed=state.collapsed
        )

    def _clean(self, value: Any, depth: int, state: _PassState) -> Any:
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, str):
            return self._clean_string(value, state)
        if isinstance(value, Enum):
            return self._clean(value.value, depth, state)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        if isinstance(value, (bytes, bytearray)):
            state.degrade("binary payload stringified")
            return self._clean_string(bytes(value).decode("utf-8", errors="replace"), state)

        if isinstance(value, Mapping):
            if depth >= self.limits.max_depth:
                return MAX_DEPTH_MARKER
            return self._clean_mapping(value, depth, state)
        if isinstance(value, (list, tuple, set, frozenset)):
            if depth >= self.limits.max_depth:
                return MAX_DEPTH_MARKER
            return self._clean_list(list(value), depth, state)

        state.degrade(f"{type(value).__name__} value stringified")
        return self._clean_string(self._safe_str(value), state)

    def _clean_string(self, text: str, state: _PassState) -> str:
        if self.limits.redact_value_patterns:
            text, count = redact_values(text)
            state.redacted += count

        max_length = self.limits.max_string_length
        if text.endswith(TRUNCATION_MARKER) and len(text) - len(TRUNCATION_MARKER) <= max_length:
            return text
        if len(text) > max_length:
            text = text[:max_length] + TRUNCATION_MARKER
            state.truncated += 1
        return text

    def _clean_mapping(self, mapping: Mapping, depth: int, state: _PassState) -> Dict[str, Any]:
        dropped = collapsed = 0
        prior = mapping.get(ANNOTATION_KEY)
        if isinstance(prior, Mapping):
            dropped = int(prior.get("dropped", 0) or 0)
            collapsed = int(prior.get("collapsed", 0) or 0)

        items = [(key, value) for key, value in mapping.items() if key != ANNOTATION_KEY]
        redact_value = self._is_sensitive_record(mapping)

        result: Dict[str, Any] = {}
        for index, (key, value) in enumerate(items):
            if len(result) >= self.limits.max_collection_items:
                overflow = len(items) - index
                dropped += overflow
                state.dropped += overflow
                break

            key = key if isinstance(key, str) else str(key)
            if is_sensitive_key(key, self._key_patterns) or (redact_value and key == "value"):
                if value != REDACTED:
                    state.redacted += 1
                result[key] = REDACTED
            else:
                result[key] = self._clean(value, depth + 1, state)

        if dropped or collapsed:
            result[ANNOTATION_KEY] = {"dropped": dropped, "collapsed": collapsed}
        return result

    def _clean_list(self, entries: List[Any], depth: int, state: _PassState) -> List[Any]:
        dropped = collapsed = 0
        if entries:
            prior = _annotation_counts(entries[-1])
            if prior is not None:
                entries = entries[:-1]
                dropped, collapsed = prior

        kept: List[Any] = []
        seen: Dict[str, int] = {}
        for entry in entries:
            cleaned = self._clean(entry, depth + 1, state)
            signature = self._signature(cleaned)
            samples = seen.get(signature, 0)
            if samples >= self.limits.max_duplicate_samples:
                collapsed += 1
                state.collapsed += 1
                continue
            if len(kept) >= self.limits.max_collection_items:
                dropped += 1
                state.dropped += 1
                continue
            seen[signature] = samples + 1
            kept.append(cleaned)

        if dropped or collapsed:
            kept.append({ANNOTATION_KEY: {"dropped": dropped, "collapsed": collapsed}})
        return kept

    def _is_sensitive_record(self, mapping: Mapping) -> bool:
        """Name/value pairs with a sensitive name, and cookie records."""
        if "name" not in mapping or "value" not in mapping:
            return False
        if COOKIE_RECORD_FIELDS.intersection(mapping.keys()):
            return True
        name = mapping.get("name")
        return isinstance(name, str) and is_sensitive_key(name, self._key_patterns)

    def _signature(self, value: Any) -> str:
        return json.dumps(self._strip_volatile(value), sort_keys=True, default=str)

    def _strip_volatile(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: self._strip_volatile(item)
                for key, item in value.items()
                if key not in self.limits.volatile_keys
            }
        if isinstance(value, list):
            return [self._strip_volatile(item) for item in value]
        return value

    @staticmethod
    def _safe_str(value: Any) -> str:
        try:
            return str(value)
        except Exception:
            return object.__repr__(value)


def sanitize(artifact: Any, limits: Optional[SanitizerLimits] = None) -> SanitizedArtifact:
    """Sanitize one artifact with the given (or default) limits."""
    return PayloadSanitizer(limits).sanitize(artifact)
