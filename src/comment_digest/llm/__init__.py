"""LLM access: providers, cache-first client, response parsing."""

from comment_digest.llm.client import CachedLlmClient, CacheMeta
from comment_digest.llm.errors import (
    JsonResponseError,
    LlmError,
    LlmProviderError,
    LlmTimeoutError,
)
from comment_digest.llm.failure_classifier import FailureClass, classify_failure
from comment_digest.llm.json_parser import parse_json_response
from comment_digest.llm.providers import GenerateFn, available_models, get_generation_function

__all__ = [
    "CacheMeta",
    "CachedLlmClient",
    "FailureClass",
    "GenerateFn",
    "JsonResponseError",
    "LlmError",
    "LlmProviderError",
    "LlmTimeoutError",
    "available_models",
    "classify_failure",
    "get_generation_function",
    "parse_json_response",
]
