"""Prompt templates for the comment analysis stages.

Each template opens with a title line. The offline ``echo`` provider keys its
canned answers off these titles, so keep them stable.
"""

from __future__ import annotations

CONDENSE_TITLE = "# Task: Condense a public comment"
THEME_DISCOVERY_TITLE = "# Task: Discover themes in public comments"
THEME_MERGE_TITLE = "# Task: Merge theme taxonomies"
THEME_SCORING_TITLE = "# Task: Score a comment against themes"
THEME_SUMMARY_TITLE = "# Task: Summarize comments on one theme"
SUMMARY_MERGE_TITLE = "# Task: Merge partial theme summaries"
ENTITY_CATEGORY_TITLE = "# Task: Discover entity categories in public comments"
ENTITY_CATEGORY_MERGE_TITLE = "# Task: Merge entity category lists"
ENTITY_EXTRACTION_TITLE = "# Task: Extract named entities from public comments"

CONDENSE_PROMPT = f"""{CONDENSE_TITLE}

You are analysing a comment submitted on a proposed federal regulation.
Rewrite it as a faithful, condensed outline. Use exactly these level-3 headers:

### ONE-LINE SUMMARY
### COMMENTER PROFILE
### CORE POSITION
### KEY RECOMMENDATIONS
### MAIN CONCERNS
### NOTABLE EXPERIENCES & INSIGHTS
### KEY QUOTATIONS
### DETAILED CONTENT

Write "No specific recommendations provided" or "No specific concerns raised"
when a section has nothing to say. Do not invent content.

<comment>
{{COMMENT_TEXT}}
</comment>
"""

THEME_DISCOVERY_PROMPT = f"""{THEME_DISCOVERY_TITLE}

Read the condensed comments below and propose a hierarchical taxonomy of the
themes they raise. Output one theme per line, numbered like "1.", "1.1.",
"1.1.1.", in the form:

<code>. <Label>. <Brief description> || <Detailed guidelines for assigning comments>

Output only the numbered list.

<comments>
{{COMMENTS}}
</comments>
"""

THEME_MERGE_PROMPT = f"""{THEME_MERGE_TITLE}

Merge the input taxonomies into a single coherent taxonomy. Combine duplicate
themes, keep distinct ones, renumber from 1, and keep the same line format:

<code>. <Label>. <Brief description> || <Detailed guidelines for assigning comments>

Output only the numbered list.

{{TAXONOMIES}}
"""

THEME_SCORING_PROMPT = f"""{THEME_SCORING_TITLE}

For each of the {{THEME_COUNT}} themes below decide how the comment relates to it:
1 = addresses the theme directly, 2 = touches on it, 3 = does not address it.

<themes>
{{THEME_HIERARCHY}}
</themes>

<comment>
{{COMMENT}}
</comment>

Answer with a JSON object mapping every theme code to its score, in a ```json block.
"""

THEME_SUMMARY_PROMPT = f"""{THEME_SUMMARY_TITLE}

Theme {{THEME_CODE}}: {{THEME_DESCRIPTION}}

Summarize what the comments below say about this theme. Answer with a JSON
object in a ```json block with keys "overview", "consensusPoints",
"debatePoints" and "keyRecommendations".

<comments>
{{COMMENTS}}
</comments>
"""

SUMMARY_MERGE_PROMPT = f"""{SUMMARY_MERGE_TITLE}

Theme {{THEME_CODE}}: {{THEME_DESCRIPTION}}

The comments on this theme were summarized in parts. Merge the partial
summaries into one, keeping every distinct point. Answer with a JSON object in
a ```json block with keys "overview", "consensusPoints", "debatePoints" and
"keyRecommendations".

<comments>
{{SUMMARIES}}
</comments>
"""

ENTITY_CATEGORY_PROMPT = f"""{ENTITY_CATEGORY_TITLE}

Identify the main categories of entities mentioned in the comments below. For
each category give one or two example entities taken from the comments.

Format your response as:

1. Category
* Member Name: Brief definition
* Another Member: Brief definition

2. Next Category
* Member Name: Brief definition

Plain text only, no markdown. Categories should be broad groups such as
"Government Agencies" or "Medical Conditions".

<comments>
{{COMMENTS}}
</comments>
"""

ENTITY_CATEGORY_MERGE_PROMPT = f"""{ENTITY_CATEGORY_MERGE_TITLE}

The category lists below came from different batches of comments. Reconcile
them into one mutually exclusive, collectively exhaustive set of categories:
every entity from the source lists must fit exactly one category.

Answer with a JSON array of category names in a ```json block.

{{CATEGORY_LISTS}}
"""

ENTITY_EXTRACTION_PROMPT = f"""{ENTITY_EXTRACTION_TITLE}

Extract every entity mentioned in the comments below and file it under one of
these categories:

<categories>
{{CATEGORIES}}
</categories>

Answer with a JSON object in a ```json block that maps each category name to a
list of entities:

{{"Category": [{{"label": "Entity Name", "definition": "Brief definition",
"terms": ["exact term", "ABBR", "variant spelling"]}}]}}

Labels are 2-4 words. Terms are matched case-sensitively on word boundaries, so
list every exact spelling and abbreviation but no common words on their own.

<comments>
{{COMMENTS}}
</comments>
"""


def render(template: str, **values: str) -> str:
    """Substitute ``{NAME}`` placeholders without interpreting other braces."""

    text = template
    for name, value in values.items():
        text = text.replace("{" + name + "}", value)
    return text


def section_between(text: str, start: str, end: str) -> str:
    """Return text between the first ``start`` marker and the following ``end`` marker."""

    begin = text.find(start)
    if begin == -1:
        return ""
    begin += len(start)
    finish = text.find(end, begin)
    if finish == -1:
        return text[begin:]
    return text[begin:finish]
