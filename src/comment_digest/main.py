"""CLI entrypoint for comment-digest."""

import logging
from collections.abc import Iterable
from pathlib import Path

import rich_click as click

from comment_digest import __version__
from comment_digest.controllers import (
    CacheClearCommand,
    CacheStatsCommand,
    CacheVerifyCommand,
    DigestCliController,
    DigestCommandError,
    LoadCommand,
    PipelineCommand,
    StageCommand,
)
from comment_digest.stages.condense import CondenseOptions
from comment_digest.stages.discover_entities import DiscoverEntitiesOptions
from comment_digest.stages.discover_themes import DiscoverThemesOptions
from comment_digest.stages.pipeline import STEP_NAMES, PipelineOptions
from comment_digest.stages.score_themes import ScoreThemesOptions
from comment_digest.stages.summarize_themes import SummarizeThemesOptions

click.rich_click.USE_MARKDOWN = True
DIGEST_CONTROLLER = DigestCliController()

_db_dir_option = click.option(
    "--db-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory with per-document SQLite files (default: COMMENT_DIGEST_DB_DIR or dbs).",
)
_concurrency_option = click.option(
    "-c",
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel LLM calls (default: from batch config).",
)
_model_option = click.option(
    "-m",
    "--model",
    default=None,
    help="Model override, e.g. gemini-pro, gemini-flash, claude or echo.",
)
_debug_option = click.option(
    "-d",
    "--debug",
    is_flag=True,
    default=False,
    help="Save prompts and responses to the debug directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="comment-digest")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def comment_digest(verbose: bool) -> None:
    """Public comment analysis CLI.

    Stages run against one SQLite database per docket document:
    `load` -> `condense` -> `discover-themes` -> `score-themes` -> `summarize-themes`
    -> `discover-entities`.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@comment_digest.command("load")
@click.argument("document_id")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="regulations.gov bulk CSV export.",
)
@click.option("-l", "--limit", type=click.IntRange(min=1), default=None, help="Load only N rows.")
@_db_dir_option
def load(document_id: str, csv_path: Path, limit: int | None, db_dir: Path | None) -> None:
    """Import comments from a CSV file."""

    _emit_lines(
        DIGEST_CONTROLLER.load(
            LoadCommand(document_id=document_id, csv_path=csv_path, limit=limit, db_dir=db_dir),
        ),
    )


@comment_digest.command("condense")
@click.argument("document_id")
@click.option("-l", "--limit", type=click.IntRange(min=1), default=None, help="Process only N comments.")
@click.option("--retry-failed", is_flag=True, default=False, help="Also retry failed comments.")
@_concurrency_option
@_model_option
@_debug_option
@_db_dir_option
def condense(  # noqa: PLR0913
    document_id: str,
    limit: int | None,
    retry_failed: bool,
    concurrency: int | None,
    model: str | None,
    debug: bool,
    db_dir: Path | None,
) -> None:
    """Condense each comment into a structured outline."""

    _emit_lines(
        DIGEST_CONTROLLER.run_stage(
            StageCommand(
                document_id=document_id,
                options=CondenseOptions(
                    limit=limit,
                    retry_failed=retry_failed,
                    concurrency=concurrency,
                    model=model,
                ),
                db_dir=db_dir,
                debug=debug,
            ),
        ),
    )


@comment_digest.command("discover-themes")
@click.argument("document_id")
@click.option("-l", "--limit", type=click.IntRange(min=1), default=None, help="Use only N comments.")
@click.option(
    "--batch-limit",
    type=click.IntRange(min=0),
    default=None,
    help="Total words above which comments are split into batches.",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Target words per batch.",
)
@click.option(
    "--merge-width",
    type=click.IntRange(min=2),
    default=None,
    help="Maximum taxonomies combined by one merge call.",
)
@click.option("-f", "--force", is_flag=True, default=False, help="Replace an existing hierarchy.")
@_concurrency_option
@_model_option
@_debug_option
@_db_dir_option
def discover_themes_command(  # noqa: PLR0913
    document_id: str,
    limit: int | None,
    batch_limit: int | None,
    batch_size: int | None,
    merge_width: int | None,
    force: bool,
    concurrency: int | None,
    model: str | None,
    debug: bool,
    db_dir: Path | None,
) -> None:
    """Discover a hierarchical theme taxonomy from condensed comments."""

    _emit_lines(
        DIGEST_CONTROLLER.run_stage(
            StageCommand(
                document_id=document_id,
                options=DiscoverThemesOptions(
                    limit=limit,
                    batch_limit=batch_limit,
                    batch_size=batch_size,
                    merge_width=merge_width,
                    concurrency=concurrency,
                    model=model,
                    force=force,
                ),
                db_dir=db_dir,
                debug=debug,
            ),
        ),
    )


@comment_digest.command("score-themes")
@click.argument("document_id")
@click.option("-l", "--limit", type=click.IntRange(min=1), default=None, help="Process only N comments.")
@click.option("--retry-failed", is_flag=True, default=False, help="Also retry failed comments.")
@_concurrency_option
@_model_option
@_debug_option
@_db_dir_option
def score_themes_command(  # noqa: PLR0913
    document_id: str,
    limit: int | None,
    retry_failed: bool,
    concurrency: int | None,
    model: str | None,
    debug: bool,
    db_dir: Path | None,
) -> None:
    """Score each condensed comment against every theme."""

    _emit_lines(
        DIGEST_CONTROLLER.run_stage(
            StageCommand(
                document_id=document_id,
                options=ScoreThemesOptions(
                    limit=limit,
                    retry_failed=retry_failed,
                    concurrency=concurrency,
                    model=model,
                ),
                db_dir=db_dir,
                debug=debug,
            ),
        ),
    )


@comment_digest.command("summarize-themes")
@click.argument("document_id")
@click.option(
    "--themes",
    default=None,
    help="Comma-separated theme codes to summarize, e.g. 1,2.1.",
)
@click.option(
    "--min-comments",
    type=click.IntRange(min=1),
    default=None,
    help="Skip themes with fewer relevant comments.",
)
@click.option("--batch-limit", type=click.IntRange(min=0), default=None, help="Batching trigger.")
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Words per batch.")
@_concurrency_option
@_model_option
@_debug_option
@_db_dir_option
def summarize_themes_command(  # noqa: PLR0913
    document_id: str,
    themes: str | None,
    min_comments: int | None,
    batch_limit: int | None,
    batch_size: int | None,
    concurrency: int | None,
    model: str | None,
    debug: bool,
    db_dir: Path | None,
) -> None:
    """Summarize what commenters say about each theme."""

    theme_codes = [code.strip() for code in themes.split(",") if code.strip()] if themes else None
    _emit_lines(
        DIGEST_CONTROLLER.run_stage(
            StageCommand(
                document_id=document_id,
                options=SummarizeThemesOptions(
                    themes=theme_codes,
                    min_comments=min_comments,
                    batch_limit=batch_limit,
                    batch_size=batch_size,
                    concurrency=concurrency,
                    model=model,
                ),
                db_dir=db_dir,
                debug=debug,
            ),
        ),
    )


@comment_digest.command("discover-entities")
@click.argument("document_id")
@click.option("-l", "--limit", type=click.IntRange(min=1), default=None, help="Use only N comments.")
@click.option(
    "--batch-limit",
    type=click.IntRange(min=0),
    default=None,
    help="Total words above which category discovery is split into batches.",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Target words per entity extraction batch.",
)
@click.option(
    "--merge-width",
    type=click.IntRange(min=2),
    default=None,
    help="Maximum category lists combined by one merge call.",
)
@click.option("-f", "--force", is_flag=True, default=False, help="Replace an existing entity taxonomy.")
@_concurrency_option
@_model_option
@_debug_option
@_db_dir_option
def discover_entities_command(  # noqa: PLR0913
    document_id: str,
    limit: int | None,
    batch_limit: int | None,
    batch_size: int | None,
    merge_width: int | None,
    force: bool,
    concurrency: int | None,
    model: str | None,
    debug: bool,
    db_dir: Path | None,
) -> None:
    """Discover named entities and tag the comments that mention them."""

    _emit_lines(
        DIGEST_CONTROLLER.run_stage(
            StageCommand(
                document_id=document_id,
                options=DiscoverEntitiesOptions(
                    limit=limit,
                    batch_limit=batch_limit,
                    batch_size=batch_size,
                    merge_width=merge_width,
                    concurrency=concurrency,
                    model=model,
                    force=force,
                ),
                db_dir=db_dir,
                debug=debug,
            ),
        ),
    )


@comment_digest.command("pipeline")
@click.argument("document_id")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="CSV to load in step 1; without it step 1 reuses loaded comments.",
)
@click.option(
    "-l",
    "--limit-total-comment-load",
    "load_limit",
    type=click.IntRange(min=1),
    default=None,
    help="Limit the number of comments loaded.",
)
@click.option(
    "--start-at",
    type=click.IntRange(min=1, max=len(STEP_NAMES)),
    default=None,
    help="Start at step: "
    + ", ".join(f"{number}={name.lower()}" for number, name in STEP_NAMES.items())
    + ".",
)
@click.option(
    "--max-crashes",
    type=click.IntRange(min=1),
    default=None,
    help="Crashes tolerated before giving up (default: 10).",
)
@_concurrency_option
@_model_option
@_debug_option
@_db_dir_option
def pipeline(  # noqa: PLR0913
    document_id: str,
    csv_path: Path | None,
    load_limit: int | None,
    start_at: int | None,
    max_crashes: int | None,
    concurrency: int | None,
    model: str | None,
    debug: bool,
    db_dir: Path | None,
) -> None:
    """Run load, condense, discover, score and summarize with crash recovery."""

    _emit_lines(
        DIGEST_CONTROLLER.pipeline(
            PipelineCommand(
                document_id=document_id,
                options=PipelineOptions(
                    csv_path=csv_path,
                    load_limit=load_limit,
                    start_at=start_at,
                    max_crashes=max_crashes,
                    concurrency=concurrency,
                    model=model,
                ),
                db_dir=db_dir,
                debug=debug,
            ),
        ),
    )


@comment_digest.group()
def cache() -> None:
    """LLM response cache maintenance."""


@cache.command("stats")
@click.argument("document_id")
@_db_dir_option
def cache_stats(document_id: str, db_dir: Path | None) -> None:
    """Show cache entries per task type and level."""

    _emit_lines(DIGEST_CONTROLLER.cache_stats(CacheStatsCommand(document_id=document_id, db_dir=db_dir)))


@cache.command("clear")
@click.argument("document_id")
@click.option("--task-type", default=None, help="Clear entries of one task type.")
@click.option("--level", type=click.IntRange(min=0), default=None, help="Restrict --task-type to a level.")
@click.option("--all", "clear_all", is_flag=True, default=False, help="Clear every entry.")
@click.option(
    "--old",
    "older_than_days",
    type=click.IntRange(min=0),
    default=None,
    help="Clear entries older than N days.",
)
@_db_dir_option
def cache_clear(  # noqa: PLR0913
    document_id: str,
    task_type: str | None,
    level: int | None,
    clear_all: bool,
    older_than_days: int | None,
    db_dir: Path | None,
) -> None:
    """Delete cache entries."""

    _emit_lines(
        DIGEST_CONTROLLER.cache_clear(
            CacheClearCommand(
                document_id=document_id,
                task_type=task_type,
                level=level,
                clear_all=clear_all,
                older_than_days=older_than_days,
                db_dir=db_dir,
            ),
        ),
    )


@cache.command("verify")
@click.argument("document_id")
@_db_dir_option
def cache_verify(document_id: str, db_dir: Path | None) -> None:
    """Check the cache for empty results and duplicate keys."""

    _emit_lines(DIGEST_CONTROLLER.cache_verify(CacheVerifyCommand(document_id=document_id, db_dir=db_dir)))


def _emit_lines(lines: Iterable[str]) -> None:
    try:
        for line in lines:
            click.echo(line)
    except DigestCommandError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":  # pragma: no cover
    comment_digest()
