"""Extract JSON payloads from free-form model responses."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from comment_digest.llm.errors import JsonResponseError

logger = logging.getLogger(__name__)

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_json_response(text: str) -> Any:
    """Parse JSON from the first fenced code block, else from the outermost braces."""

    fenced = _CODE_FENCE_RE.search(text)
    if fenced is not None:
        content = fenced.group(1).strip()
        try:
            return json.loads(content)
        except json.JSONDecodeError as error:
            logger.debug("Unparseable JSON code block: %s", content[:500])
            raise JsonResponseError(f"Invalid JSON in code block: {error}") from error

    cleaned = text.strip()
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first == -1 or last == -1 or last <= first:
        raise JsonResponseError("No valid JSON found in response")
    try:
        return json.loads(cleaned[first : last + 1])
    except json.JSONDecodeError as error:
        raise JsonResponseError(f"Invalid JSON: {error}") from error
