from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from comment_digest import __version__
from comment_digest.main import comment_digest
from comment_digest.storage.repository import CommentRepository

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Stage Commands, Pipeline, Cache Ops"),
]

DOC = "CMS-2025-0050-0031"


def _invoke(*args: str):
    return CliRunner().invoke(comment_digest, list(args))


def test_version_option() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert f"comment-digest, version {__version__}" in result.output


def test_pipeline_runs_every_step_with_echo_model(echo_env: Path, sample_csv: Path) -> None:
    result = _invoke("pipeline", DOC, "--csv", str(sample_csv))

    assert result.exit_code == 0, result.output
    assert "Pipeline status: completed (crashes: 0/10)" in result.output
    assert "[ok] 5. Summarizing themes" in result.output
    assert "[ok] 6. Discovering entities" in result.output

    repository = CommentRepository(echo_env / f"{DOC}.sqlite")
    try:
        assert repository.count_comments() == 3
        assert repository.count_themes() == 3
        assert len(repository.list_theme_summaries()) == 3
        assert repository.count_entities() > 0
    finally:
        repository.close()


def test_stage_commands_resume_instead_of_repeating(echo_env: Path, sample_csv: Path) -> None:
    loaded = _invoke("load", DOC, "--csv", str(sample_csv), "-l", "2")
    first = _invoke("condense", DOC)
    second = _invoke("condense", DOC)

    assert loaded.exit_code == 0, loaded.output
    assert "load: 2 selected, 2 succeeded, 0 failed" in loaded.output
    assert "condense: 2 selected, 2 succeeded, 0 failed" in first.output
    assert "No comments to process" in second.output
    assert "condense: 0 selected" in second.output


def test_discover_themes_reports_skip_without_force(echo_env: Path, sample_csv: Path) -> None:
    _invoke("load", DOC, "--csv", str(sample_csv))
    _invoke("condense", DOC)
    _invoke("discover-themes", DOC)

    skipped = _invoke("discover-themes", DOC)
    forced = _invoke("discover-themes", DOC, "--force", "--merge-width", "2")

    assert skipped.exit_code == 0
    assert "Themes already discovered (3 themes in hierarchy)" in skipped.output
    assert "discover-themes:" not in skipped.output
    assert forced.exit_code == 0, forced.output
    assert "Theme discovery complete! Themes: 3" in forced.output


def test_discover_entities_command_skips_until_forced(echo_env: Path, sample_csv: Path) -> None:
    _invoke("load", DOC, "--csv", str(sample_csv))
    _invoke("condense", DOC)

    first = _invoke("discover-entities", DOC)
    skipped = _invoke("discover-entities", DOC)
    forced = _invoke("discover-entities", DOC, "--force", "--batch-size", "5")

    assert first.exit_code == 0, first.output
    assert "Entity discovery complete! Categories: 1" in first.output
    assert "discover-entities: 3 selected, 2 succeeded, 0 failed" in first.output
    assert "Entities already discovered" in skipped.output
    assert "discover-entities:" not in skipped.output
    assert forced.exit_code == 0, forced.output
    # below the extraction trigger, so --batch-size does not split the comments
    assert "Stage 2: extracting entities in 1 batch(es)" in forced.output


def test_missing_csv_is_a_click_error(echo_env: Path, tmp_path: Path) -> None:
    result = _invoke("load", DOC, "--csv", str(tmp_path / "missing.csv"))

    assert result.exit_code == 1
    assert "Step load failed: CSV file not found" in result.output


def test_unsafe_document_id_is_rejected(echo_env: Path) -> None:
    result = _invoke("cache", "stats", "../outside")

    assert result.exit_code == 1
    assert "Invalid document id" in result.output


def test_cache_commands(echo_env: Path, sample_csv: Path) -> None:
    _invoke("load", DOC, "--csv", str(sample_csv))
    _invoke("condense", DOC)

    stats = _invoke("cache", "stats", DOC)
    verify = _invoke("cache", "verify", DOC)
    by_type = _invoke("cache", "clear", DOC, "--task-type", "condense", "--level", "0")
    empty = _invoke("cache", "stats", DOC)

    assert stats.exit_code == 0
    assert "Entries: 3" in stats.output
    assert "condense" in stats.output
    assert verify.exit_code == 0
    assert "Cache is consistent." in verify.output
    assert "Cleared 3 cache entries for condense level 0." in by_type.output
    assert "Cache is empty." in empty.output


def test_cache_clear_needs_exactly_one_selector(echo_env: Path) -> None:
    nothing = _invoke("cache", "clear", DOC)
    both = _invoke("cache", "clear", DOC, "--all", "--old", "30")
    level_only = _invoke("cache", "clear", DOC, "--all", "--level", "1")
    everything = _invoke("cache", "clear", DOC, "--all")

    assert nothing.exit_code == 1
    assert "Specify exactly one of --all, --task-type or --old." in nothing.output
    assert both.exit_code == 1
    assert level_only.exit_code == 1
    assert "--level requires --task-type." in level_only.output
    assert everything.exit_code == 0
    assert "Cleared 0 cache entries." in everything.output


def test_pipeline_start_at_is_range_checked(echo_env: Path) -> None:
    result = _invoke("pipeline", DOC, "--start-at", "7")

    assert result.exit_code == 2
