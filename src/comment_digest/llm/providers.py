"""Model providers: async ``prompt -> text`` functions selected by model name."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from comment_digest import prompts
from comment_digest.llm.errors import LlmError, LlmProviderError

logger = logging.getLogger(__name__)

GenerateFn = Callable[[str], Awaitable[str]]

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 600.0


@dataclass(slots=True, frozen=True)
class GeminiModel:
    model_id: str
    thinking_budget: int | None = None


GEMINI_MODELS: dict[str, GeminiModel] = {
    "gemini-pro": GeminiModel("gemini-2.5-pro"),
    "gemini-flash": GeminiModel("gemini-2.5-flash", thinking_budget=14_000),
    "gemini-flash-lite": GeminiModel("gemini-2.5-flash-lite"),
}
CLAUDE_MODEL_ID = "claude-3-5-sonnet-20241022"
ECHO_MODEL = "echo"


class GeminiProvider:
    """Google Generative Language REST API."""

    def __init__(
        self,
        model: GeminiModel,
        *,
        api_key: str | None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)

    async def __call__(self, prompt: str) -> str:
        if not self._api_key:
            raise LlmError("GEMINI_API_KEY environment variable is required")
        generation_config: dict[str, Any] = {"responseMimeType": "text/plain"}
        if self.model.thinking_budget is not None:
            generation_config["thinkingConfig"] = {"thinkingBudget": self.model.thinking_budget}
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                GEMINI_API_URL.format(model=self.model.model_id),
                headers={"x-goog-api-key": self._api_key},
                json=body,
            )
        if not response.is_success:
            raise LlmProviderError("Gemini", response.text[:500], status_code=response.status_code)
        data = response.json()
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as error:
            raise LlmProviderError("Gemini", f"unexpected payload: {data!r}"[:500]) from error
        return "".join(str(part.get("text", "")) for part in parts)


class ClaudeProvider:
    """Anthropic Messages API."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model_id: str = CLAUDE_MODEL_ID,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.model_id = model_id
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)

    async def __call__(self, prompt: str) -> str:
        if not self._api_key:
            raise LlmError("ANTHROPIC_API_KEY environment variable is required")
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                ANTHROPIC_API_URL,
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                },
                json={
                    "model": self.model_id,
                    "max_tokens": 8192,
                    "temperature": 0,
                    "messages": [{"role": "user", "content": prompt}],
                },
            )
        if not response.is_success:
            raise LlmProviderError("Claude", response.text[:500], status_code=response.status_code)
        data = response.json()
        try:
            return str(data["content"][0]["text"])
        except (KeyError, IndexError, TypeError) as error:
            raise LlmProviderError("Claude", f"unexpected payload: {data!r}"[:500]) from error


_THEME_LINE_RE = re.compile(r"^(\d+(?:\.\d+)*)\.\s+", re.MULTILINE)
_ECHO_TAXONOMY = (
    "1. Access and Affordability. Cost and availability of services || "
    "Comments about prices, coverage, and who can obtain care.\n"
    "1.1. Rural Access. Distance and provider shortages || "
    "Comments about rural or underserved areas.\n"
    "2. Regulatory Burden. Compliance and reporting load || "
    "Comments about paperwork, deadlines, and administrative cost.\n"
)
_NUMBERED_LINE_RE = re.compile(r"^\s*\d+\.\s+(.+?)\s*$", re.MULTILINE)
_CAPITALIZED_WORD_RE = re.compile(r"\b[A-Z][a-z]{3,}\b")
_ECHO_ENTITY_CATEGORY = "Named Terms"


def _echo_entity_names(text: str) -> list[str]:
    """Distinct capitalized words in order of first appearance."""

    return list(dict.fromkeys(_CAPITALIZED_WORD_RE.findall(text)))


async def generate_with_echo(prompt: str) -> str:
    """Deterministic offline provider that answers in the shape each stage expects."""

    if prompts.CONDENSE_TITLE in prompt:
        body = prompts.section_between(prompt, "<comment>", "</comment>")
        words = body.split()
        return (
            "### ONE-LINE SUMMARY\n"
            f"{' '.join(words[:12])}\n\n"
            "### COMMENTER PROFILE\n"
            "Individual commenter\n\n"
            "### CORE POSITION\n"
            f"{' '.join(words[:40])}\n\n"
            "### DETAILED CONTENT\n"
            f"{body.strip()}\n"
        )
    if prompts.THEME_DISCOVERY_TITLE in prompt:
        return _ECHO_TAXONOMY
    if prompts.THEME_MERGE_TITLE in prompt:
        first = prompts.section_between(
            prompt,
            "--- INPUT TAXONOMY 1 ---",
            "--- END OF INPUT TAXONOMY 1 ---",
        )
        return first.strip() or _ECHO_TAXONOMY
    if prompts.THEME_SCORING_TITLE in prompt:
        hierarchy = prompts.section_between(prompt, "<themes>", "</themes>")
        codes = _THEME_LINE_RE.findall(hierarchy)
        scores = ", ".join(f'"{code}": {1 if "." not in code else 2}' for code in codes)
        return f"```json\n{{{scores}}}\n```"
    if prompts.ENTITY_CATEGORY_TITLE in prompt:
        names = _echo_entity_names(prompts.section_between(prompt, "<comments>", "</comments>"))
        example = names[0] if names else "Commenter"
        return f"1. {_ECHO_ENTITY_CATEGORY}\n* {example}: Named in the comments\n"
    if prompts.ENTITY_CATEGORY_MERGE_TITLE in prompt:
        categories = list(dict.fromkeys(_NUMBERED_LINE_RE.findall(prompt)))
        return f"```json\n{json.dumps(categories or [_ECHO_ENTITY_CATEGORY])}\n```"
    if prompts.ENTITY_EXTRACTION_TITLE in prompt:
        categories_section = prompts.section_between(prompt, "<categories>", "</categories>")
        listed = _NUMBERED_LINE_RE.findall(categories_section)
        category = listed[0] if listed else _ECHO_ENTITY_CATEGORY
        names = _echo_entity_names(prompts.section_between(prompt, "<comments>", "</comments>"))
        entities = [
            {"label": name, "definition": f"{name} as named by commenters", "terms": [name]}
            for name in names
        ]
        return f"```json\n{json.dumps({category: entities})}\n```"
    if prompts.THEME_SUMMARY_TITLE in prompt or prompts.SUMMARY_MERGE_TITLE in prompt:
        comments = prompts.section_between(prompt, "<comments>", "</comments>")
        words = comments.split()
        return (
            "```json\n"
            '{"overview": "' + " ".join(words[:30]).replace('"', "'") + '", '
            '"consensusPoints": [], "debatePoints": [], "keyRecommendations": []}\n'
            "```"
        )
    return prompt.strip()


def get_generation_function(
    model: str,
    *,
    gemini_api_key: str | None = None,
    anthropic_api_key: str | None = None,
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> GenerateFn:
    """Resolve a model name to its provider; unknown names raise ``ValueError``."""

    if model in GEMINI_MODELS:
        return GeminiProvider(
            GEMINI_MODELS[model],
            api_key=gemini_api_key,
            timeout_seconds=timeout_seconds,
        )
    if model == "claude":
        return ClaudeProvider(api_key=anthropic_api_key, timeout_seconds=timeout_seconds)
    if model == ECHO_MODEL:
        return generate_with_echo
    raise ValueError(f"Unknown model: {model}. Available: {', '.join(available_models())}")


def available_models() -> list[str]:
    return [*GEMINI_MODELS, "claude", ECHO_MODEL]
