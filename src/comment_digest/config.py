"""Runtime configuration: environment settings and the batch-config file."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from comment_digest.orchestration.batching import (
    DEFAULT_BATCH_WORD_LIMIT,
    DEFAULT_TOTAL_WORD_LIMIT,
    BatchOptions,
)
from comment_digest.orchestration.supervisor import (
    DEFAULT_MAX_CRASHES,
    DEFAULT_RETRY_DELAY_SECONDS,
)
from comment_digest.storage.common import db_path_for_document

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "gemini-pro"
DEFAULT_CONCURRENCY = 5
DEFAULT_MERGE_WIDTH = 10


@dataclass(slots=True)
class LlmSettings:
    """Language-model provider settings."""

    default_model: str | None = None
    gemini_api_key: str | None = None
    anthropic_api_key: str | None = None
    request_timeout_seconds: float = 600.0
    debug_dir: Path = Path("debug")


@dataclass(slots=True)
class PipelineSettings:
    """Crash-recovery policy of the ``pipeline`` command."""

    max_crashes: int = DEFAULT_MAX_CRASHES
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_dir: Path = Path("dbs")
    batch_config_path: Path = Path("batch-config.json")
    llm: LlmSettings = field(default_factory=LlmSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)

    @classmethod
    def from_env(cls, db_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_dir=db_dir or Path(os.getenv("COMMENT_DIGEST_DB_DIR", "dbs")),
            batch_config_path=Path(
                os.getenv("COMMENT_DIGEST_BATCH_CONFIG", "batch-config.json"),
            ),
            llm=LlmSettings(
                default_model=os.getenv("COMMENT_DIGEST_MODEL") or None,
                gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
                anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
                request_timeout_seconds=float(
                    os.getenv("COMMENT_DIGEST_LLM_TIMEOUT_SECONDS", "600"),
                ),
                debug_dir=Path(os.getenv("COMMENT_DIGEST_DEBUG_DIR", "debug")),
            ),
            pipeline=PipelineSettings(
                max_crashes=int(
                    os.getenv("COMMENT_DIGEST_MAX_CRASHES", str(DEFAULT_MAX_CRASHES)),
                ),
                retry_delay_seconds=float(
                    os.getenv(
                        "COMMENT_DIGEST_RETRY_DELAY_SECONDS",
                        str(DEFAULT_RETRY_DELAY_SECONDS),
                    ),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values no stage can work with."""

        if self.llm.request_timeout_seconds <= 0:
            raise ValueError("COMMENT_DIGEST_LLM_TIMEOUT_SECONDS must be > 0.")
        if self.pipeline.max_crashes < 1:
            raise ValueError("COMMENT_DIGEST_MAX_CRASHES must be >= 1.")
        if self.pipeline.retry_delay_seconds < 0:
            raise ValueError("COMMENT_DIGEST_RETRY_DELAY_SECONDS must be >= 0.")

    def db_path(self, document_id: str) -> Path:
        return db_path_for_document(self.db_dir, document_id)


@dataclass(slots=True)
class TaskConfig:
    """Effective per-task settings after applying global defaults."""

    concurrency: int = DEFAULT_CONCURRENCY
    merge_width: int = DEFAULT_MERGE_WIDTH
    model: str | None = None
    batching: BatchOptions | None = None
    timeout_per_batch_seconds: float | None = None
    max_failures: int = 0
    validation: dict[str, Any] = field(default_factory=dict)
    thresholds: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BatchConfig:
    """Parsed ``batch-config.json``."""

    concurrency: int = DEFAULT_CONCURRENCY
    merge_width: int = DEFAULT_MERGE_WIDTH
    default_model: str | None = None
    tasks: dict[str, dict[str, Any]] = field(default_factory=dict)
    model_concurrency: dict[str, float] = field(default_factory=dict)
    max_crashes: int | None = None
    retry_delay_seconds: float | None = None

    @classmethod
    def load(cls, path: Path) -> BatchConfig:
        """Read the config file; a missing or unreadable file yields defaults."""

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("Could not load batch config from %s, using defaults", path)
            return cls()
        except json.JSONDecodeError as error:
            raise ValueError(f"Invalid batch config {path}: {error}") from error
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BatchConfig:
        global_section = raw.get("global") or {}
        error_handling = (raw.get("pipeline") or {}).get("errorHandling") or {}
        model_concurrency: dict[str, float] = {}
        for model, entry in (raw.get("models") or {}).items():
            if isinstance(entry, dict) and entry.get("concurrency") is not None:
                model_concurrency[model] = float(entry["concurrency"])
        retry_delay = error_handling.get("defaultRetryDelay")
        config = cls(
            concurrency=int(
                (global_section.get("concurrency") or {}).get("default", DEFAULT_CONCURRENCY),
            ),
            merge_width=int(
                (global_section.get("mergeWidth") or {}).get("default", DEFAULT_MERGE_WIDTH),
            ),
            default_model=global_section.get("defaultModel"),
            tasks={
                str(name): dict(value)
                for name, value in (raw.get("tasks") or {}).items()
                if isinstance(value, dict)
            },
            model_concurrency=model_concurrency,
            max_crashes=error_handling.get("maxCrashes"),
            # Stored in milliseconds in the file.
            retry_delay_seconds=None if retry_delay is None else float(retry_delay) / 1000.0,
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ValueError("global.concurrency.default must be >= 1.")
        if self.merge_width < 2:
            raise ValueError("global.mergeWidth.default must be >= 2.")
        for name, multiplier in self.model_concurrency.items():
            if multiplier <= 0:
                raise ValueError(f"models.{name}.concurrency must be > 0.")

    def task(self, name: str, *, model: str | None = None) -> TaskConfig:
        """Effective settings for ``name``; ``model`` applies its concurrency multiplier."""

        return self._task_config(self.tasks.get(name, {}), model)

    def stage(self, name: str, stage: str, *, model: str | None = None) -> TaskConfig:
        """Settings for one stage of a multi-stage task; stage keys override task keys."""

        raw = dict(self.tasks.get(name, {}))
        stages = raw.pop("stages", None) or {}
        overrides = stages.get(stage)
        if isinstance(overrides, dict):
            raw.update(overrides)
        return self._task_config(raw, model)

    def _task_config(self, raw: dict[str, Any], model: str | None) -> TaskConfig:
        concurrency = int(raw.get("concurrency") or self.concurrency)
        if model and model in self.model_concurrency:
            concurrency = max(1, round(concurrency * self.model_concurrency[model]))
        batching_raw = raw.get("batching")
        batching = None
        if isinstance(batching_raw, dict):
            batching = BatchOptions(
                total_word_limit=int(
                    batching_raw.get("triggerWordLimit", DEFAULT_TOTAL_WORD_LIMIT),
                ),
                batch_word_limit=int(
                    batching_raw.get("batchWordLimit", DEFAULT_BATCH_WORD_LIMIT),
                ),
            )
        timeout = raw.get("timeoutPerBatch")
        return TaskConfig(
            concurrency=concurrency,
            merge_width=int(raw.get("mergeWidth") or self.merge_width),
            model=raw.get("model"),
            batching=batching,
            # Stored in milliseconds in the file.
            timeout_per_batch_seconds=None if timeout is None else float(timeout) / 1000.0,
            max_failures=int(raw.get("maxFailures") or 0),
            validation=dict(raw.get("validation") or {}),
            thresholds=dict(raw.get("thresholds") or {}),
        )

    def resolve_model(
        self,
        task_name: str,
        cli_model: str | None = None,
        *,
        env_default: str | None = None,
    ) -> str:
        """CLI override, then task model, then global default, then fallback."""

        if cli_model:
            return cli_model
        task_model = self.tasks.get(task_name, {}).get("model")
        if task_model:
            return str(task_model)
        if self.default_model:
            return self.default_model
        return env_default or FALLBACK_MODEL
