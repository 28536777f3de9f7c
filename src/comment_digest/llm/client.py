"""Cache-first LLM client shared by all stages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar, overload

from comment_digest.cache.llm_cache import CacheStoreOutcome, LlmCache
from comment_digest.llm.errors import LlmError, LlmTimeoutError
from comment_digest.llm.providers import GenerateFn

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")


@dataclass(slots=True, frozen=True)
class CacheMeta:
    """Inspection metadata stored next to a cached response."""

    task_type: str
    task_level: int = 0
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ClientStats:
    cache_hits: int = 0
    cache_misses: int = 0
    stale_hits: int = 0
    generations: int = 0


class CachedLlmClient:
    """Wraps a provider function with the content-addressed cache.

    Flow per call: cache lookup, post-process the cached text (a failing
    post-process marks the hit unusable and falls through), generate under the
    optional timeout, post-process the fresh text, store. A fresh result that
    passes post-processing replaces an unusable entry. Storage runs in a
    worker thread so SQLite never blocks the event loop.
    """

    def __init__(
        self,
        model: str,
        generate: GenerateFn,
        cache: LlmCache | None = None,
        *,
        debug_dir: Path | None = None,
    ) -> None:
        self.model = model
        self._generate = generate
        self._cache = cache
        self._debug_dir = debug_dir
        self.stats = ClientStats()

    @overload
    async def generate(
        self,
        prompt: str,
        *,
        cache_meta: CacheMeta | None = ...,
        post_process: None = ...,
        timeout_seconds: float | None = ...,
        debug_prefix: str | None = ...,
    ) -> str: ...

    @overload
    async def generate(
        self,
        prompt: str,
        *,
        cache_meta: CacheMeta | None = ...,
        post_process: Callable[[str], ResultT],
        timeout_seconds: float | None = ...,
        debug_prefix: str | None = ...,
    ) -> ResultT: ...

    async def generate(
        self,
        prompt: str,
        *,
        cache_meta: CacheMeta | None = None,
        post_process: Callable[[str], Any] | None = None,
        timeout_seconds: float | None = None,
        debug_prefix: str | None = None,
    ) -> Any:
        meta = cache_meta or CacheMeta(task_type="unspecified")
        await self._save_debug(debug_prefix, "prompt", prompt)

        stale = False
        if self._cache is not None:
            entry = await asyncio.to_thread(self._cache.lookup, prompt)
            if entry is not None:
                try:
                    value = post_process(entry.result) if post_process else entry.result
                except Exception as error:
                    stale = True
                    self.stats.stale_hits += 1
                    logger.warning(
                        "Cached %s response failed post-processing (%s); regenerating.",
                        meta.task_type,
                        error,
                    )
                else:
                    self.stats.cache_hits += 1
                    logger.debug("Cache hit for %s (level %s)", meta.task_type, meta.task_level)
                    return value
            else:
                self.stats.cache_misses += 1

        text = await self._call_provider(prompt, timeout_seconds=timeout_seconds, label=debug_prefix)
        self.stats.generations += 1
        await self._save_debug(debug_prefix, "response", text)
        if not text.strip():
            raise LlmError(f"Empty response from {self.model} for {meta.task_type}")

        value = post_process(text) if post_process else text

        if self._cache is not None:
            if stale:
                await asyncio.to_thread(self._cache.invalidate, prompt)
            outcome = await asyncio.to_thread(
                self._cache.store,
                prompt,
                task_type=meta.task_type,
                task_level=meta.task_level,
                params=meta.params,
                result=text,
                model=self.model,
            )
            if outcome is CacheStoreOutcome.CONFLICT:
                logger.debug("Kept existing cache entry for %s", meta.task_type)
        return value

    async def _call_provider(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None,
        label: str | None,
    ) -> str:
        if timeout_seconds is None:
            return await self._generate(prompt)
        try:
            return await asyncio.wait_for(self._generate(prompt), timeout=timeout_seconds)
        except TimeoutError as error:
            raise LlmTimeoutError(timeout_seconds, label) from error

    async def _save_debug(self, prefix: str | None, kind: str, content: str) -> None:
        if self._debug_dir is None or prefix is None:
            return
        path = self._debug_dir / f"{prefix}_{kind}.txt"
        await asyncio.to_thread(_write_text, path, content)
        logger.debug("Debug saved: %s", path)


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
