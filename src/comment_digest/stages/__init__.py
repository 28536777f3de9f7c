"""Analysis stages run against one docket document database."""

from comment_digest.stages.base import StageContext, StageError, StageSummary
from comment_digest.stages.condense import CondenseOptions, condense_comments
from comment_digest.stages.discover_entities import (
    DiscoverEntitiesOptions,
    discover_entities,
    merge_entity_taxonomies,
    scan_entity_mentions,
)
from comment_digest.stages.discover_themes import (
    DiscoverThemesOptions,
    discover_themes,
    parse_theme_hierarchy,
)
from comment_digest.stages.load import load_comments, read_comment_csv
from comment_digest.stages.pipeline import PipelineOptions, run_pipeline
from comment_digest.stages.score_themes import ScoreThemesOptions, score_themes
from comment_digest.stages.summarize_themes import SummarizeThemesOptions, summarize_themes

__all__ = [
    "CondenseOptions",
    "DiscoverEntitiesOptions",
    "DiscoverThemesOptions",
    "PipelineOptions",
    "ScoreThemesOptions",
    "StageContext",
    "StageError",
    "StageSummary",
    "SummarizeThemesOptions",
    "condense_comments",
    "discover_entities",
    "discover_themes",
    "load_comments",
    "merge_entity_taxonomies",
    "parse_theme_hierarchy",
    "read_comment_csv",
    "run_pipeline",
    "scan_entity_mentions",
    "score_themes",
    "summarize_themes",
]
