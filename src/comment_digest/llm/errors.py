"""Errors raised by the LLM client layer."""

from __future__ import annotations


class LlmError(RuntimeError):
    """Base class for language-model call failures."""


class LlmTimeoutError(LlmError):
    def __init__(self, timeout_seconds: float, label: str | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.label = label
        suffix = f" ({label})" if label else ""
        super().__init__(f"LLM call timed out after {timeout_seconds:g}s{suffix}")


class LlmProviderError(LlmError):
    """Provider returned an error response or an unusable payload."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        status = f" {status_code}" if status_code is not None else ""
        super().__init__(f"{provider} API error{status}: {message}")


class JsonResponseError(LlmError, ValueError):
    """Response text does not contain parseable JSON."""
