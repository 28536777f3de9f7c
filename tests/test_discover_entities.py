from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest

from comment_digest import prompts
from comment_digest.cache.llm_cache import LlmCache
from comment_digest.config import BatchConfig
from comment_digest.llm.providers import generate_with_echo
from comment_digest.models import EntityDefinition, EntityMention
from comment_digest.stages.base import StageError
from comment_digest.stages.condense import CondenseOptions, condense_comments
from comment_digest.stages.discover_entities import (
    CategoryExample,
    CategoryList,
    DiscoverEntitiesOptions,
    EntitySource,
    discover_entities,
    merge_category_examples,
    merge_entity_taxonomies,
    parse_category_list,
    parse_category_names,
    parse_entity_taxonomy,
    scan_entity_mentions,
)
from comment_digest.stages.load import load_comments

pytestmark = [
    allure.epic("Analysis Stages"),
    allure.feature("Entity Discovery"),
]

ECHO_CATEGORY = "Named Terms"


class _FailingExtraction:
    """Echo model whose first ``failures`` extraction calls raise."""

    def __init__(self, failures: int) -> None:
        self.failures = failures

    async def __call__(self, prompt: str) -> str:
        if prompts.ENTITY_EXTRACTION_TITLE in prompt and self.failures > 0:
            self.failures -= 1
            raise RuntimeError("provider overloaded, please retry")
        return await generate_with_echo(prompt)


def _condense_sample(context, sample_csv: Path) -> None:
    load_comments(context, sample_csv)
    asyncio.run(condense_comments(context, CondenseOptions()))


def _source(comment_id: str, detailed: str) -> EntitySource:
    return EntitySource(
        comment_id=comment_id,
        content=detailed,
        detailed_content=detailed,
        word_count=len(detailed.split()),
    )


def _cache_counts(repository) -> dict[tuple[str, int], int]:
    return {
        (row.task_type, row.task_level): row.count for row in LlmCache(repository.engine).stats()
    }


def _entity_config(**stages: dict) -> BatchConfig:
    return BatchConfig.from_dict(
        {"global": {"defaultModel": "echo"}, "tasks": {"discoverEntities": {"stages": stages}}},
    )


def test_parse_category_list_collects_examples_per_category() -> None:
    parsed = parse_category_list(
        "1. Government Agencies\n"
        "* CMS: Runs Medicare\n"
        "* HHS: Parent department\n"
        "\n"
        "2. Medical Conditions\n"
        "stray line without a bullet\n"
        "* Diabetes: Chronic disease\n",
    )

    assert parsed.categories == ["Government Agencies", "Medical Conditions"]
    assert parsed.examples["Government Agencies"][0] == CategoryExample("CMS", "Runs Medicare")
    assert [example.name for example in parsed.examples["Medical Conditions"]] == ["Diabetes"]


def test_parse_category_names_accepts_fenced_and_bare_arrays() -> None:
    assert parse_category_names('```json\n["**Agencies**", "Programs", "Agencies"]\n```') == [
        "Agencies",
        "Programs",
    ]
    assert parse_category_names('["A", "B"]') == ["A", "B"]
    with pytest.raises(ValueError, match="Expected a JSON array"):
        parse_category_names('{"categories": ["A"]}')
    with pytest.raises(ValueError, match="empty"):
        parse_category_names("[]")


def test_merged_category_names_inherit_overlapping_examples() -> None:
    first = CategoryList(["Agencies"], {"Agencies": [CategoryExample("CMS", "Runs Medicare")]})
    second = CategoryList(
        ["Federal Government Agencies"],
        {
            "Federal Government Agencies": [
                CategoryExample("cms", "duplicate by name"),
                CategoryExample("HHS", "Parent department"),
            ],
        },
    )

    merged = merge_category_examples(["Government Agencies", "Conditions"], [first, second])

    assert merged.categories == ["Government Agencies", "Conditions"]
    assert [example.name for example in merged.examples["Government Agencies"]] == ["CMS", "HHS"]
    assert merged.examples["Conditions"] == []


def test_parse_entity_taxonomy_fills_missing_definitions_and_terms() -> None:
    entities = parse_entity_taxonomy(
        "```json\n"
        '{"Agencies": [{"label": "CMS", "definition": "", "terms": ["CMS", " "]},'
        ' {"label": " "}, "junk", {"label": "HHS"}]}\n'
        "```",
    )

    assert [(entity.label, entity.terms) for entity in entities] == [
        ("CMS", ["CMS"]),
        ("HHS", ["HHS"]),
    ]
    assert entities[0].definition == "A agencies entity mentioned in comments"
    with pytest.raises(ValueError, match="must map to a list"):
        parse_entity_taxonomy('{"Agencies": "CMS"}')


def test_merge_joins_entities_sharing_a_normalized_term() -> None:
    batch_one = [
        EntityDefinition("Programs", "Prior Authorization", "Approval before care", ["prior auth", "PA"]),
        EntityDefinition("Programs", "Medicare Advantage", "Private Medicare plans", ["MA"]),
    ]
    batch_two = [
        EntityDefinition(
            "Programs",
            "Prior-Auth",
            "Insurer approval required before a covered service",
            ["Prior Auth"],
        ),
        EntityDefinition("Agencies", "PA", "Pennsylvania", ["PA"]),
    ]

    merged = merge_entity_taxonomies([batch_one, batch_two])

    assert [entity.key for entity in merged] == [
        ("Programs", "Medicare Advantage"),
        ("Programs", "Prior-Auth"),
        ("Agencies", "PA"),
    ]
    prior_auth = merged[1]
    assert prior_auth.definition == "Insurer approval required before a covered service"
    assert prior_auth.terms == ["PA", "Prior Auth", "prior auth"]
    assert batch_one[0].label == "Prior Authorization"
    assert batch_one[0].terms == ["prior auth", "PA"]


def test_merge_follows_chains_of_overlap() -> None:
    merged = merge_entity_taxonomies(
        [
            [
                EntityDefinition("Things", "Alpha", "first", ["x"]),
                EntityDefinition("Things", "Beta", "second", ["y"]),
                EntityDefinition("Things", "Gamma Long", "the longest definition", ["x", "y"]),
            ],
        ],
    )

    assert len(merged) == 1
    assert merged[0].label == "Beta"
    assert merged[0].definition == "the longest definition"
    assert merged[0].terms == ["x", "y"]


def test_scan_keeps_entities_inside_the_mention_window() -> None:
    sources = [
        _source("c1", "CMS should delay prior auth rules for clinics."),
        _source("c2", "The CMS proposal ignores rural clinics."),
        _source("c3", "Rural Health Clinic closures in Texas."),
        _source("c4", ""),
    ]
    entities = [
        EntityDefinition("Agencies", "CMS", "agency", ["CMS"]),
        EntityDefinition("Places", "Rural Clinic", "clinic", ["Rural Health Clinic", "rural clinics"]),
        EntityDefinition("Places", "Texas", "state", ["Texas"]),
        EntityDefinition("Places", "Tex", "abbreviation", ["Tex"]),
        EntityDefinition("Places", "Clinic", "too common", ["Clinic", "clinics"]),
        EntityDefinition("Programs", "Prior Authorization", "approval", ["PA"]),
    ]

    scan = scan_entity_mentions(entities, sources)

    assert [entity.label for entity in scan.kept] == ["CMS", "Rural Clinic", "Texas"]
    assert scan.removed == [
        ("Places", "Tex"),
        ("Places", "Clinic"),
        ("Programs", "Prior Authorization"),
    ]
    assert scan.hits[("Places", "Clinic")] == 3
    assert scan.mentions == [
        EntityMention("c1", "Agencies", "CMS"),
        EntityMention("c2", "Agencies", "CMS"),
        EntityMention("c2", "Places", "Rural Clinic"),
        EntityMention("c3", "Places", "Rural Clinic"),
        EntityMention("c3", "Places", "Texas"),
    ]


def test_discover_entities_with_echo_model(
    make_context,
    repository,
    sample_csv,
) -> None:
    context, lines = make_context()
    _condense_sample(context, sample_csv)

    summary = asyncio.run(discover_entities(context, DiscoverEntitiesOptions()))

    assert (summary.selected, summary.succeeded, summary.failed) == (3, 2, 0)
    labels = {entity.label for entity in repository.list_entities()}
    assert {"Rural", "Premiums", "Lopez"} <= labels
    # named in every comment, or in two of three
    assert not labels & {"Submitter", "Individual"}
    assert EntityMention("DOC-0001", ECHO_CATEGORY, "Rural") in repository.list_entity_mentions("DOC-0001")
    assert f"   removed {ECHO_CATEGORY}|Submitter (3 comments, 100.00%)" in lines
    assert "Final category list: 1 categories" in lines


def test_discover_entities_skips_until_forced_and_reuses_cache(
    make_context,
    repository,
    sample_csv,
) -> None:
    context, lines = make_context()
    _condense_sample(context, sample_csv)
    asyncio.run(discover_entities(context, DiscoverEntitiesOptions()))
    saved = repository.count_entities()

    skipped = asyncio.run(discover_entities(context, DiscoverEntitiesOptions()))
    forced = asyncio.run(discover_entities(context, DiscoverEntitiesOptions(force=True)))

    assert skipped.skipped
    assert f"Entities already discovered ({saved} entities)" in lines
    assert not forced.skipped
    assert repository.count_entities() == saved
    stats = _cache_counts(repository)
    assert stats[("discover-entity-categories", 0)] == 1
    assert stats[("extract-entities", 0)] == 1


def test_discover_entities_needs_condensed_comments(make_context) -> None:
    context, lines = make_context()

    summary = asyncio.run(discover_entities(context, DiscoverEntitiesOptions()))

    assert summary.skipped
    assert "No condensed comments found. Run 'condense' first." in lines


def test_category_batches_reduce_through_a_merge_tree(
    make_context,
    repository,
    sample_csv,
) -> None:
    config = _entity_config(
        categoryDiscovery={"batching": {"triggerWordLimit": 0, "batchWordLimit": 1}},
    )
    context, lines = make_context(batch_config=config)
    _condense_sample(context, sample_csv)

    asyncio.run(discover_entities(context, DiscoverEntitiesOptions(merge_width=2)))

    assert "Category tasks: 5 (batches: 3, merges: 2, 2-way)" in lines
    stats = _cache_counts(repository)
    assert stats[("discover-entity-categories", 0)] == 3
    assert stats[("merge-entity-categories", 1)] == 1
    assert stats[("merge-entity-categories", 2)] == 1
    assert {entity.category for entity in repository.list_entities()} == {ECHO_CATEGORY}


def test_extraction_tolerates_failures_within_budget(
    make_context,
    repository,
    sample_csv,
) -> None:
    config = _entity_config(
        entityExtraction={
            "batching": {"triggerWordLimit": 0, "batchWordLimit": 5000},
            "maxFailures": 1,
        },
    )
    context, lines = make_context(generate=_FailingExtraction(failures=1), batch_config=config)
    _condense_sample(context, sample_csv)

    summary = asyncio.run(
        discover_entities(context, DiscoverEntitiesOptions(batch_size=1, concurrency=1)),
    )

    assert summary.failed == 1
    assert summary.notes == ["Failed extraction batches: 1"]
    assert "  Continuing despite failure (1/1 allowed)" in lines
    assert repository.count_entities() > 0


def test_extraction_aborts_when_failures_exceed_budget(
    make_context,
    repository,
    sample_csv,
) -> None:
    config = _entity_config(
        entityExtraction={
            "batching": {"triggerWordLimit": 0, "batchWordLimit": 5000},
            "maxFailures": 1,
        },
    )
    context, _ = make_context(generate=_FailingExtraction(failures=5), batch_config=config)
    _condense_sample(context, sample_csv)

    with pytest.raises(StageError, match="Step discover-entities failed: .*too many batches: 1, 2"):
        asyncio.run(discover_entities(context, DiscoverEntitiesOptions(batch_size=1, concurrency=1)))

    assert repository.count_entities() == 0
