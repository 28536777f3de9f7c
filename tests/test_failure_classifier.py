from __future__ import annotations

import allure
import httpx
import pytest

from comment_digest.llm.errors import JsonResponseError, LlmProviderError, LlmTimeoutError
from comment_digest.llm.failure_classifier import FailureClass, classify_failure
from comment_digest.llm.json_parser import parse_json_response
from comment_digest.orchestration.errors import CircularDependencyError

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("Failures and Response Parsing"),
]


@pytest.mark.parametrize(
    ("error", "expected_class", "expected_rule"),
    [
        (LlmTimeoutError(30, "batch_0"), FailureClass.TIMEOUT, "timeout_type"),
        (httpx.ConnectError("refused"), FailureClass.TRANSIENT, "transport_type"),
        (CircularDependencyError(["a", "b"]), FailureClass.STRUCTURAL, "structural_type"),
        (JsonResponseError("No valid JSON found"), FailureClass.VALIDATION, "json_response_type"),
        (
            LlmProviderError("gemini", "Resource has been exhausted", status_code=429),
            FailureClass.TRANSIENT,
            "rate_limit_transient",
        ),
        (RuntimeError("upstream returned 503"), FailureClass.TRANSIENT, "generic_transient"),
        (
            ValueError("Missing scores for themes: 1.2, 3"),
            FailureClass.VALIDATION,
            "validation_message",
        ),
        (RuntimeError("Something odd"), FailureClass.UNKNOWN, "fallback_unknown"),
    ],
)
def test_classify_failure(error, expected_class, expected_rule) -> None:
    classification = classify_failure(error)

    assert classification.failure_class is expected_class
    assert classification.matched_rule == expected_rule


def test_describe_prefixes_error_with_class() -> None:
    error = ValueError("Expected at least 10 theme scores, but got 3")

    assert classify_failure(error).describe(error) == (
        "[validation] Expected at least 10 theme scores, but got 3"
    )


def test_parse_json_prefers_fenced_block() -> None:
    text = 'Here you go {"ignored": true}\n```json\n{"1": 1, "1.1": 2}\n```\nThanks'

    assert parse_json_response(text) == {"1": 1, "1.1": 2}


def test_parse_json_falls_back_to_outermost_braces() -> None:
    assert parse_json_response('Answer: {"a": {"b": 1}} done') == {"a": {"b": 1}}


@pytest.mark.parametrize(
    "text",
    ["no json here", "```json\n{broken\n```", "{ not: valid }"],
)
def test_parse_json_rejects_garbage(text: str) -> None:
    with pytest.raises(JsonResponseError):
        parse_json_response(text)
