"""Discover named entities and annotate the comments that mention them.

Category discovery runs even batches of comments through a merge tree and ends
with one list of categories. Entity extraction then sends smaller batches to
the model in a worker pool, each asked to file entities under those
categories. The per-batch results are merged without the model, entities that
occur in too few or too many comments are dropped, and the rest are stored
together with one mention row per comment that names them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from comment_digest import prompts
from comment_digest.llm.client import CacheMeta
from comment_digest.llm.errors import JsonResponseError
from comment_digest.llm.failure_classifier import classify_failure
from comment_digest.llm.json_parser import parse_json_response
from comment_digest.models import CommentRecord, CondensedRecord, EntityDefinition, EntityMention
from comment_digest.orchestration.batching import (
    Batch,
    BatchOptions,
    count_words,
    create_even_batches,
)
from comment_digest.orchestration.task_queue import QueueHooks, TaskQueue
from comment_digest.orchestration.tasks import (
    InitialPayload,
    MergePayload,
    Task,
    build_hierarchical_tasks,
    final_task_id,
    merge_level,
)
from comment_digest.orchestration.worker_pool import ActiveJobRegistry, run_pool
from comment_digest.stages.base import StageContext, StageError, StageSummary
from comment_digest.storage.repository import CommentRepository

logger = logging.getLogger(__name__)

STAGE_NAME = "discover-entities"
TASK_NAME = "discoverEntities"
CATEGORY_STAGE = "categoryDiscovery"
EXTRACTION_STAGE = "entityExtraction"
DEFAULT_CATEGORY_WORD_LIMIT = 50_000
DEFAULT_EXTRACTION_WORD_LIMIT = 5_000
DEFAULT_EXTRACTION_MAX_FAILURES = 3
DEFAULT_EXTRACTION_TIMEOUT_SECONDS = 60.0
MIN_MENTION_SHARE = 0.01
MAX_MENTION_SHARE = 0.5

_CATEGORY_LINE_RE = re.compile(r"^\d+\.\s+(.+)$")
_EXAMPLE_LINE_RE = re.compile(r"^\*\s+([^:]+):\s*(.*)$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class DiscoverEntitiesOptions:
    limit: int | None = None
    batch_limit: int | None = None
    batch_size: int | None = None
    merge_width: int | None = None
    concurrency: int | None = None
    model: str | None = None
    force: bool = False


@dataclass(slots=True)
class EntitySource:
    """What the entity prompts see of one comment; only ``detailed_content`` is scanned."""

    comment_id: str
    content: str
    detailed_content: str
    word_count: int


@dataclass(slots=True, frozen=True)
class CategoryExample:
    name: str
    definition: str


@dataclass(slots=True)
class CategoryList:
    categories: list[str] = field(default_factory=list)
    examples: dict[str, list[CategoryExample]] = field(default_factory=dict)


@dataclass(slots=True)
class EntityScan:
    """Result of matching entity terms against comments."""

    kept: list[EntityDefinition]
    mentions: list[EntityMention]
    hits: dict[tuple[str, str], int]
    removed: list[tuple[str, str]]


def build_entity_source(record: CondensedRecord, comment: CommentRecord | None) -> EntitySource:
    detailed = record.sections.get("detailedContent", "")
    lines: list[str] = []
    if comment is not None:
        lines.append(f"[{comment.submitter_type}] {comment.submitter}")
        organization = str(comment.attributes.get("organization") or "").strip()
        if organization and organization != comment.submitter:
            lines.append(f"Organization: {organization}")
        location = str(comment.attributes.get("stateProvinceRegion") or "").strip()
        if location:
            lines.append(f"Location: {location}")
        lines.append("")
    if detailed:
        lines.append(detailed)
    content = "\n".join(lines)
    return EntitySource(
        comment_id=record.comment_id,
        content=content,
        detailed_content=detailed,
        word_count=count_words(content),
    )


def load_entity_sources(
    repository: CommentRepository,
    limit: int | None = None,
) -> list[EntitySource]:
    records = repository.list_condensed(limit=limit)
    comments = {
        comment.id: comment
        for comment in repository.get_comments([record.comment_id for record in records])
    }
    return [build_entity_source(record, comments.get(record.comment_id)) for record in records]


def format_entity_comments(sources: Sequence[EntitySource]) -> str:
    return "\n\n".join(
        f'<comment id="{source.comment_id}">\n{source.content}\n</comment>' for source in sources
    )


def parse_category_list(text: str) -> CategoryList:
    """Parse ``1. Category`` lines with ``* Name: definition`` examples beneath them."""

    result = CategoryList()
    current: str | None = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        category = _CATEGORY_LINE_RE.match(line)
        if category is not None:
            current = category.group(1).strip()
            if current not in result.examples:
                result.categories.append(current)
                result.examples[current] = []
            continue
        example = _EXAMPLE_LINE_RE.match(line)
        if example is not None and current is not None:
            result.examples[current].append(
                CategoryExample(name=example.group(1).strip(), definition=example.group(2).strip()),
            )
    return result


def parse_category_names(text: str) -> list[str]:
    """Parse the merged JSON array of category names, dropping markdown bold markers."""

    stripped = text.strip()
    if stripped.startswith("["):
        try:
            parsed: Any = json.loads(stripped)
        except json.JSONDecodeError as error:
            raise JsonResponseError(f"Invalid JSON: {error}") from error
    else:
        parsed = parse_json_response(text)
    if not isinstance(parsed, list):
        raise ValueError(f"Expected a JSON array of categories, got {type(parsed).__name__}")
    names = [str(item).replace("**", "").strip() for item in parsed]
    names = list(dict.fromkeys(name for name in names if name))
    if not names:
        raise ValueError("Merged category list is empty")
    return names


def format_category_lists(inputs: Sequence[CategoryList]) -> str:
    blocks = []
    for number, info in enumerate(inputs, start=1):
        lines = [f"=== CATEGORY LIST {number} ({len(info.categories)} categories) ==="]
        for position, category in enumerate(info.categories, start=1):
            lines.append(f"{position}. {category}")
            examples = info.examples.get(category)
            if examples:
                lines.append(f"   Example: {examples[0].name}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def merge_category_examples(names: Sequence[str], inputs: Sequence[CategoryList]) -> CategoryList:
    """Attach input examples to merged names whose text contains, or is contained in, theirs."""

    merged = CategoryList(categories=list(names))
    for name in names:
        wanted = name.lower()
        seen: set[str] = set()
        examples: list[CategoryExample] = []
        for info in inputs:
            for original, candidates in info.examples.items():
                lowered = original.lower()
                if wanted not in lowered and lowered not in wanted:
                    continue
                for example in candidates:
                    if example.name.lower() not in seen:
                        seen.add(example.name.lower())
                        examples.append(example)
        merged.examples[name] = examples
    return merged


def default_definition(category: str) -> str:
    return f"A {category.lower()} entity mentioned in comments"


def parse_entity_taxonomy(text: str) -> list[EntityDefinition]:
    """Parse ``{"Category": [{"label", "definition", "terms"}]}`` into entity definitions."""

    parsed = parse_json_response(text)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object taxonomy, got {type(parsed).__name__}")
    entities: list[EntityDefinition] = []
    for category, members in parsed.items():
        if not isinstance(members, list):
            raise ValueError(f"Category {category!r} must map to a list of entities")
        for member in members:
            if not isinstance(member, dict) or not str(member.get("label") or "").strip():
                logger.debug("Skipping malformed entity in %s: %r", category, member)
                continue
            label = str(member["label"]).strip()
            definition = str(member.get("definition") or "").strip()
            if not definition:
                logger.warning("Entity %r in %r has no definition, using default", label, category)
                definition = default_definition(str(category))
            terms = member.get("terms")
            if not isinstance(terms, list):
                terms = [label]
            entities.append(
                EntityDefinition(
                    category=str(category),
                    label=label,
                    definition=definition,
                    terms=[str(term) for term in terms if str(term).strip()],
                ),
            )
    return entities


def normalize_term(text: str) -> str:
    """Lowercase ASCII alphanumerics separated by single spaces; accents are dropped."""

    decomposed = unicodedata.normalize("NFD", text)
    bare = "".join(char for char in decomposed if not unicodedata.combining(char))
    return _NON_ALNUM_RE.sub(" ", bare.lower()).strip()


def _signature(entity: EntityDefinition) -> set[str]:
    keys = (normalize_term(value) for value in (entity.label, *entity.terms))
    return {key for key in keys if key}


def _absorb(into: EntityDefinition, other: EntityDefinition) -> None:
    if len(other.label) < len(into.label):
        into.label = other.label
    if not into.definition:
        into.definition = other.definition or "No definition available"
    elif other.definition and len(other.definition) > len(into.definition):
        into.definition = other.definition
    into.terms.extend(other.terms)


def _merge_category(entities: list[EntityDefinition]) -> list[EntityDefinition]:
    signatures = [_signature(entity) for entity in entities]
    changed = True
    while changed:
        changed = False
        first = 0
        while first < len(entities):
            second = first + 1
            while second < len(entities):
                if signatures[first].isdisjoint(signatures[second]):
                    second += 1
                    continue
                _absorb(entities[first], entities.pop(second))
                signatures[first] |= signatures.pop(second)
                changed = True
            first += 1
    for entity in entities:
        entity.terms = sorted(set(entity.terms))
    return sorted(entities, key=lambda entity: entity.label.casefold())


def merge_entity_taxonomies(
    taxonomies: Iterable[Sequence[EntityDefinition]],
) -> list[EntityDefinition]:
    """Combine per-batch taxonomies.

    Within a category, entities whose normalized label or terms overlap become
    one entity: the shorter label and the longer definition win, and terms are
    pooled. Inputs are not modified.
    """

    by_category: dict[str, list[EntityDefinition]] = {}
    for taxonomy in taxonomies:
        for entity in taxonomy:
            by_category.setdefault(entity.category, []).append(
                EntityDefinition(
                    category=entity.category,
                    label=entity.label,
                    definition=entity.definition,
                    terms=list(entity.terms),
                ),
            )
    merged: list[EntityDefinition] = []
    for category in by_category:
        merged.extend(_merge_category(by_category[category]))
    return merged


def scan_entity_mentions(
    entities: Sequence[EntityDefinition],
    sources: Sequence[EntitySource],
    *,
    min_share: float = MIN_MENTION_SHARE,
    max_share: float = MAX_MENTION_SHARE,
) -> EntityScan:
    """Match terms case-sensitively on word boundaries and keep entities in the share window.

    An entity survives when the number of comments naming it lies in
    ``[max(1, floor(n * min_share)), floor(n * max_share)]`` for ``n`` comments.
    """

    upper = math.floor(len(sources) * max_share)
    lower = max(1, math.floor(len(sources) * min_share))
    patterns = {
        entity.key: [re.compile(rf"\b{re.escape(term)}\b") for term in entity.terms if term.strip()]
        for entity in entities
    }
    matched: dict[tuple[str, str], list[str]] = {key: [] for key in patterns}
    for source in sources:
        if not source.detailed_content:
            continue
        for key, compiled in patterns.items():
            if any(pattern.search(source.detailed_content) for pattern in compiled):
                matched[key].append(source.comment_id)

    kept: list[EntityDefinition] = []
    removed: list[tuple[str, str]] = []
    mentions: list[EntityMention] = []
    for entity in entities:
        comment_ids = matched[entity.key]
        if lower <= len(comment_ids) <= upper:
            kept.append(entity)
            mentions.extend(
                EntityMention(comment_id=comment_id, category=entity.category, label=entity.label)
                for comment_id in comment_ids
            )
        else:
            removed.append(entity.key)
    return EntityScan(
        kept=kept,
        mentions=mentions,
        hits={key: len(ids) for key, ids in matched.items()},
        removed=removed,
    )


async def _discover_categories(
    context: StageContext,
    options: DiscoverEntitiesOptions,
    sources: list[EntitySource],
    summary: StageSummary,
) -> list[str]:
    stage_config = context.batch_config.stage(
        TASK_NAME,
        CATEGORY_STAGE,
        model=context.model_for(TASK_NAME, options.model),
    )
    client = context.client_for(TASK_NAME, options.model or stage_config.model)
    concurrency = options.concurrency or stage_config.concurrency
    defaults = stage_config.batching or BatchOptions(
        total_word_limit=DEFAULT_CATEGORY_WORD_LIMIT,
        batch_word_limit=DEFAULT_CATEGORY_WORD_LIMIT,
    )
    batches = create_even_batches(
        sources,
        BatchOptions(
            total_word_limit=options.batch_limit or defaults.total_word_limit,
            batch_word_limit=defaults.batch_word_limit,
        ),
    )
    merge_width = options.merge_width or stage_config.merge_width
    tasks = build_hierarchical_tasks(
        batches,
        lambda _batch, index: f"cat_batch_{index}",
        task_prefix="cat_merge",
        merge_width=merge_width,
    )
    root_id = final_task_id(tasks)
    context.emit(f"Stage 1: discovering entity categories with {client.model}")
    context.emit(
        f"Category tasks: {len(tasks)} (batches: {len(batches)}, "
        f"merges: {len(tasks) - len(batches)}, {merge_width}-way)",
    )

    queue: TaskQueue[CategoryList]

    def on_complete(task: Task, _result: Any) -> None:
        context.emit(f"   [{task.id}] Completed ({len(queue.completed)}/{len(tasks)} total)")

    def on_error(task: Task, error: BaseException) -> None:
        context.emit(f"   [{task.id}] Failed: {error}")

    async def process(task: Task, get_result: Any) -> CategoryList:
        if isinstance(task.payload, InitialPayload):
            batch: Batch[EntitySource] = task.payload.item
            return await client.generate(
                prompts.render(
                    prompts.ENTITY_CATEGORY_PROMPT,
                    COMMENTS=format_entity_comments(batch.items),
                ),
                cache_meta=CacheMeta(
                    task_type="discover-entity-categories",
                    task_level=0,
                    params={
                        "batchNumber": batch.number,
                        "wordCount": batch.word_count,
                        "commentCount": len(batch.items),
                    },
                ),
                post_process=parse_category_list,
                timeout_seconds=stage_config.timeout_per_batch_seconds,
                debug_prefix=f"categories_{task.id}",
            )
        payload: MergePayload = task.payload
        inputs: list[CategoryList] = [get_result(input_id) for input_id in payload.input_ids]
        names = await client.generate(
            prompts.render(
                prompts.ENTITY_CATEGORY_MERGE_PROMPT,
                CATEGORY_LISTS=format_category_lists(inputs),
            ),
            cache_meta=CacheMeta(
                task_type="merge-entity-categories",
                task_level=merge_level(task.id),
                params={"taskId": task.id, "inputCount": len(inputs)},
            ),
            post_process=parse_category_names,
            timeout_seconds=stage_config.timeout_per_batch_seconds,
            debug_prefix=f"categories_{task.id}",
        )
        return merge_category_examples(names, inputs)

    queue = TaskQueue(
        tasks,
        concurrency=concurrency,
        hooks=QueueHooks(on_task_complete=on_complete, on_task_error=on_error),
        max_failures=stage_config.max_failures,
    )
    results = await queue.process(process)
    summary.succeeded += len(queue.completed)
    summary.failed += len(queue.failed)
    if root_id is None or root_id not in results:
        raise StageError(STAGE_NAME, "Failed to get the final category list")
    categories = results[root_id].categories
    if not categories:
        raise StageError(STAGE_NAME, "Category discovery returned no categories")
    return categories


async def _extract_entities(
    context: StageContext,
    options: DiscoverEntitiesOptions,
    sources: list[EntitySource],
    categories: list[str],
    summary: StageSummary,
) -> list[list[EntityDefinition]]:
    stage_config = context.batch_config.stage(
        TASK_NAME,
        EXTRACTION_STAGE,
        model=context.model_for(TASK_NAME, options.model),
    )
    client = context.client_for(TASK_NAME, options.model or stage_config.model)
    concurrency = options.concurrency or stage_config.concurrency
    max_failures = stage_config.max_failures or DEFAULT_EXTRACTION_MAX_FAILURES
    timeout = stage_config.timeout_per_batch_seconds or DEFAULT_EXTRACTION_TIMEOUT_SECONDS
    defaults = stage_config.batching or BatchOptions(
        total_word_limit=DEFAULT_EXTRACTION_WORD_LIMIT,
        batch_word_limit=DEFAULT_EXTRACTION_WORD_LIMIT,
    )
    batches = create_even_batches(
        sources,
        BatchOptions(
            total_word_limit=defaults.total_word_limit,
            batch_word_limit=options.batch_size or defaults.batch_word_limit,
        ),
    )
    category_list = "\n".join(
        f"{number}. {name}" for number, name in enumerate(categories, start=1)
    )
    context.emit(f"Stage 2: extracting entities in {len(batches)} batch(es) with {client.model}")

    results: list[list[EntityDefinition]] = []
    failed_batches: list[int] = []
    active = ActiveJobRegistry()

    async def handle(batch: Batch[EntitySource], index: int, total: int) -> None:
        with active.track(f"entities_batch_{batch.number}"):
            context.emit(
                f"[{index}/{total}] Batch {batch.number}: {len(batch.items)} comments, "
                f"{batch.word_count} words",
            )
            try:
                entities = await client.generate(
                    prompts.render(
                        prompts.ENTITY_EXTRACTION_PROMPT,
                        CATEGORIES=category_list,
                        COMMENTS=format_entity_comments(batch.items),
                    ),
                    cache_meta=CacheMeta(
                        task_type="extract-entities",
                        task_level=0,
                        params={
                            "batchNumber": batch.number,
                            "wordCount": batch.word_count,
                            "commentCount": len(batch.items),
                            "categoryCount": len(categories),
                        },
                    ),
                    post_process=parse_entity_taxonomy,
                    timeout_seconds=timeout,
                    debug_prefix=f"entities_batch_{batch.number}",
                )
            except Exception as error:
                failed_batches.append(batch.number)
                summary.failed += 1
                message = classify_failure(error).describe(error)
                logger.warning("Entity batch %d failed: %s", batch.number, message)
                context.emit(f"  [Batch {batch.number}] Error: {message}")
                if len(failed_batches) > max_failures:
                    raise StageError(
                        STAGE_NAME,
                        "Entity extraction failed for too many batches: "
                        + ", ".join(str(number) for number in failed_batches),
                    ) from error
                context.emit(
                    f"  Continuing despite failure ({len(failed_batches)}/{max_failures} allowed)",
                )
                return
            results.append(entities)
            summary.succeeded += 1
            context.emit(f"  [Batch {batch.number}] Extracted {len(entities)} entities")

    await run_pool(batches, concurrency, handle)
    if failed_batches:
        summary.notes.append(
            "Failed extraction batches: "
            + ", ".join(str(number) for number in sorted(failed_batches)),
        )
    return results


async def discover_entities(
    context: StageContext,
    options: DiscoverEntitiesOptions,
) -> StageSummary:
    repository = context.repository
    summary = StageSummary(stage=STAGE_NAME)
    context.emit(f"Discovering entities for document {context.document_id}")

    existing = await asyncio.to_thread(repository.count_entities)
    if existing and not options.force:
        context.emit(f"Entities already discovered ({existing} entities)")
        context.emit("   To re-run, pass --force")
        summary.skipped = True
        return summary

    sources = await asyncio.to_thread(load_entity_sources, repository, options.limit)
    if not sources:
        context.emit("No condensed comments found. Run 'condense' first.")
        summary.skipped = True
        return summary
    summary.selected = len(sources)
    context.emit(f"Loaded {len(sources)} condensed comments")

    categories = await _discover_categories(context, options, sources, summary)
    context.emit(f"Final category list: {len(categories)} categories")

    taxonomies = await _extract_entities(context, options, sources, categories, summary)
    merged = merge_entity_taxonomies(taxonomies)
    scan = scan_entity_mentions(merged, sources)
    context.emit(
        f"Kept {len(scan.kept)} of {len(merged)} entities inside the "
        f"[{MIN_MENTION_SHARE:.0%}, {MAX_MENTION_SHARE:.0%}] mention window",
    )
    for category, label in scan.removed[:10]:
        hits = scan.hits[(category, label)]
        context.emit(f"   removed {category}|{label} ({hits} comments, {hits / len(sources):.2%})")
    if len(scan.removed) > 10:
        context.emit(f"   ... and {len(scan.removed) - 10} more")

    saved, annotations = await asyncio.to_thread(
        repository.replace_entities,
        scan.kept,
        scan.mentions,
    )
    context.emit(
        f"Entity discovery complete! Categories: {len(categories)}, "
        f"entities: {saved}, annotations: {annotations}",
    )
    return summary
