"""Content-addressed LLM response cache."""

from comment_digest.cache.llm_cache import (
    CacheEntry,
    CacheStatsRow,
    CacheStoreOutcome,
    CacheVerifyReport,
    LlmCache,
    prompt_hash,
)

__all__ = [
    "CacheEntry",
    "CacheStatsRow",
    "CacheStoreOutcome",
    "CacheVerifyReport",
    "LlmCache",
    "prompt_hash",
]
