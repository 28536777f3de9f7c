"""Shared plumbing for analysis stages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from comment_digest.cache.llm_cache import LlmCache
from comment_digest.config import BatchConfig, Settings, TaskConfig
from comment_digest.llm.client import CachedLlmClient
from comment_digest.llm.failure_classifier import classify_failure
from comment_digest.llm.providers import GenerateFn, get_generation_function
from comment_digest.storage.repository import CommentRepository

logger = logging.getLogger(__name__)


class StageError(RuntimeError):
    """Stage failure that should crash the surrounding pipeline step."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"Step {step} failed: {message}")
        self.step = step


@dataclass(slots=True)
class StageSummary:
    """Counters reported at the end of a stage run."""

    stage: str
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: bool = False
    notes: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed


@dataclass(slots=True)
class StageContext:
    """Everything a stage needs for one docket document."""

    document_id: str
    repository: CommentRepository
    settings: Settings
    batch_config: BatchConfig
    debug: bool = False
    on_progress: Callable[[str], None] | None = None
    generate_override: GenerateFn | None = None

    def emit(self, msg: str) -> None:
        logger.info(msg)
        if self.on_progress is not None:
            self.on_progress(msg)

    def task_config(self, task_name: str, cli_model: str | None = None) -> TaskConfig:
        return self.batch_config.task(task_name, model=self.model_for(task_name, cli_model))

    def model_for(self, task_name: str, cli_model: str | None = None) -> str:
        return self.batch_config.resolve_model(
            task_name,
            cli_model,
            env_default=self.settings.llm.default_model,
        )

    def client_for(self, task_name: str, cli_model: str | None = None) -> CachedLlmClient:
        model = self.model_for(task_name, cli_model)
        generate = self.generate_override or get_generation_function(
            model,
            gemini_api_key=self.settings.llm.gemini_api_key,
            anthropic_api_key=self.settings.llm.anthropic_api_key,
            timeout_seconds=self.settings.llm.request_timeout_seconds,
        )
        return CachedLlmClient(
            model,
            generate,
            LlmCache(self.repository.engine),
            debug_dir=self.settings.llm.debug_dir if self.debug else None,
        )


async def mark_item_failed(
    mark_failed: Callable[[str, str], None],
    item_id: str,
    error: BaseException,
) -> str:
    """Record a classified failure in a status ledger off the event loop."""

    message = classify_failure(error).describe(error)
    await asyncio.to_thread(mark_failed, item_id, message)
    return message
