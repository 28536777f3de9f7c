"""Deterministic classification of stage failures for logs and the status ledger."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

import httpx

from comment_digest.llm.errors import JsonResponseError, LlmTimeoutError
from comment_digest.orchestration.errors import (
    CircularDependencyError,
    MissingDependencyError,
    TaskGraphError,
)


class FailureClass(StrEnum):
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    VALIDATION = "validation"
    STRUCTURAL = "structural"
    UNKNOWN = "unknown"


_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "resource_exhausted",
    "please retry",
    "try again later",
    "overloaded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "502",
    "503",
    "504",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "invalid json",
    "no valid json",
    "missing scores",
    "expected at least",
    "empty response",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None = None

    def describe(self, error: BaseException) -> str:
        """Error text prefixed with its class, as stored in the status ledger."""

        return f"[{self.failure_class.value}] {error}"


def classify_failure(error: BaseException) -> FailureClassification:
    """Map an exception onto timeout | transient | validation | structural | unknown."""

    if isinstance(error, (LlmTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return FailureClassification(FailureClass.TIMEOUT, matched_rule="timeout_type")
    if isinstance(error, (TaskGraphError, CircularDependencyError, MissingDependencyError)):
        return FailureClassification(FailureClass.STRUCTURAL, matched_rule="structural_type")
    if isinstance(error, JsonResponseError):
        return FailureClassification(FailureClass.VALIDATION, matched_rule="json_response_type")
    if isinstance(error, httpx.TransportError):
        return FailureClassification(FailureClass.TRANSIENT, matched_rule="transport_type")

    haystack = str(error).lower()

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.TIMEOUT, "timeout_message", pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.TRANSIENT, "rate_limit_transient", pattern)

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.TRANSIENT, "generic_transient", pattern)

    pattern = _first_match(haystack, _VALIDATION_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.VALIDATION, "validation_message", pattern)

    return FailureClassification(FailureClass.UNKNOWN, matched_rule="fallback_unknown")


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
