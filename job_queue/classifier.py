"""Deterministic fault classification for WhatsApp session errors.

The worker only asks one question of a failure: is it a throttling signal,
a permanent client fault, or anything else. Everything about *how* that is
decided lives here so richer structured inspection can replace it without
touching backoff or retry logic.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from config.settings import DEFAULT_NON_RETRYABLE_PATTERNS, DEFAULT_RATE_LIMIT_PATTERNS

RATE_LIMIT_STATUS = 429


class FailureKind(str, Enum):
    THROTTLED = "throttled"
    NON_RETRYABLE = "non_retryable"
    RETRYABLE = "retryable"


def error_message(error: Any) -> str:
    """Best-effort human message of an exception or error-shaped mapping."""
    if error is None:
        return ""
    if isinstance(error, Mapping):
        return str(error.get("message", "") or "")
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error)


def _field(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def error_status_code(error: Any) -> Optional[int]:
    """Transport status from ``output.statusCode`` or a raw ``data`` status."""
    output = _field(error, "output")
    if output is not None:
        status = _field(output, "statusCode", "status_code")
        if isinstance(status, int):
            return status
    data = _field(error, "data")
    if isinstance(data, int) and not isinstance(data, bool):
        return data
    return None


def _first_match(haystack: str, patterns: Sequence[str]) -> Optional[str]:
    for pattern in patterns:
        if pattern.lower() in haystack:
            return pattern
    return None


@dataclass(frozen=True)
class FailureClassifier:
    """Pattern tables for one external network's error vocabulary."""

    rate_limit_patterns: tuple[str, ...] = tuple(DEFAULT_RATE_LIMIT_PATTERNS)
    non_retryable_patterns: tuple[str, ...] = tuple(DEFAULT_NON_RETRYABLE_PATTERNS)

    @classmethod
    def from_config(cls, conf) -> FailureClassifier:
        return cls(
            rate_limit_patterns=tuple(conf.rate_limit_patterns),
            non_retryable_patterns=tuple(conf.non_retryable_patterns),
        )

    def is_rate_limit_error(self, error: Any) -> bool:
        if not error:
            return False
        if error_status_code(error) == RATE_LIMIT_STATUS:
            return True
        return _first_match(error_message(error).lower(), self.rate_limit_patterns) is not None

    def is_retryable_error(self, error: Any) -> bool:
        if not error:
            return True
        return _first_match(error_message(error).lower(), self.non_retryable_patterns) is None

    def classify(self, error: Any) -> FailureKind:
        if self.is_rate_limit_error(error):
            return FailureKind.THROTTLED
        if not self.is_retryable_error(error):
            return FailureKind.NON_RETRYABLE
        return FailureKind.RETRYABLE


_default = FailureClassifier()


def classify_failure(error: Any) -> FailureKind:
    """Classify with the default pattern tables."""
    return _default.classify(error)
