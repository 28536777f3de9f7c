from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest

from comment_digest.cache.llm_cache import LlmCache
from comment_digest.llm.client import CachedLlmClient, CacheMeta
from comment_digest.llm.errors import JsonResponseError, LlmError, LlmTimeoutError
from comment_digest.llm.json_parser import parse_json_response

pytestmark = [
    allure.epic("LLM Cache"),
    allure.feature("Cache-First Client"),
]


class _ScriptedModel:
    def __init__(self, *responses: str, delay: float = 0.0) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []
        self.delay = delay

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.responses.pop(0)


def test_second_identical_prompt_is_served_from_cache(repository) -> None:
    model = _ScriptedModel("first answer")
    client = CachedLlmClient("echo", model, LlmCache(repository.engine))
    meta = CacheMeta(task_type="condense", params={"commentId": "A"})

    first = asyncio.run(client.generate("prompt", cache_meta=meta))
    second = asyncio.run(client.generate("prompt", cache_meta=meta))

    assert first == second == "first answer"
    assert model.prompts == ["prompt"]
    assert client.stats.cache_misses == 1
    assert client.stats.cache_hits == 1
    entry = LlmCache(repository.engine).lookup("prompt")
    assert entry is not None
    assert entry.model == "echo"
    assert entry.task_params == {"commentId": "A"}


def test_unparseable_cached_entry_is_regenerated_and_replaced(repository) -> None:
    cache = LlmCache(repository.engine)
    cache.store("score me", task_type="theme_scoring", result="not json at all")
    model = _ScriptedModel('```json\n{"1": 1}\n```')
    client = CachedLlmClient("echo", model, cache)

    result = asyncio.run(client.generate("score me", post_process=parse_json_response))

    assert result == {"1": 1}
    assert client.stats.stale_hits == 1
    assert client.stats.generations == 1
    assert cache.lookup("score me").result == '```json\n{"1": 1}\n```'

    again = asyncio.run(client.generate("score me", post_process=parse_json_response))

    assert again == {"1": 1}
    assert client.stats.cache_hits == 1
    assert client.stats.generations == 1
    assert model.prompts == ["score me"]


def test_fresh_result_failing_post_process_is_not_cached(repository) -> None:
    cache = LlmCache(repository.engine)
    client = CachedLlmClient("echo", _ScriptedModel("plain text"), cache)

    with pytest.raises(JsonResponseError):
        asyncio.run(client.generate("needs json", post_process=parse_json_response))

    assert cache.lookup("needs json") is None


def test_slow_generation_times_out_and_stores_nothing(repository) -> None:
    cache = LlmCache(repository.engine)
    client = CachedLlmClient("echo", _ScriptedModel("late", delay=1.0), cache)

    with pytest.raises(LlmTimeoutError, match="timed out after 0.05s"):
        asyncio.run(client.generate("slow", timeout_seconds=0.05, debug_prefix="slow_task"))

    assert cache.count() == 0


def test_empty_response_is_an_error(repository) -> None:
    client = CachedLlmClient("echo", _ScriptedModel("  \n"), LlmCache(repository.engine))

    with pytest.raises(LlmError, match="Empty response"):
        asyncio.run(client.generate("anything", cache_meta=CacheMeta(task_type="condense")))


def test_debug_dir_captures_prompt_and_response(tmp_path: Path) -> None:
    debug_dir = tmp_path / "debug"
    client = CachedLlmClient("echo", _ScriptedModel("answer"), debug_dir=debug_dir)

    asyncio.run(client.generate("question", debug_prefix="condense_A"))

    assert (debug_dir / "condense_A_prompt.txt").read_text(encoding="utf-8") == "question"
    assert (debug_dir / "condense_A_response.txt").read_text(encoding="utf-8") == "answer"
