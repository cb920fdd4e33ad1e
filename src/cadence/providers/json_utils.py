"""Best-effort JSON extraction from free-form model output."""

import json
import re
from typing import Any, Dict, Optional

from loguru import logger

FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
LINE_COMMENT_RE = re.compile(r"(^|\s)//.*?$", re.MULTILINE)
TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a reply that may wrap it in fences or prose.

    A fenced block is preferred; comments and trailing commas are repaired.

    Returns:
        Parsed dict or None if nothing usable was found
    """
    if not text:
        return None

    candidate = None
    fence = FENCE_RE.search(text)
    if fence:
        candidate = first_object(fence.group(1))
    if candidate is None:
        candidate = first_object(text)
    if candidate is None:
        logger.warning(f"[provider] No JSON object in reply: {text[:200]}")
        return None

    parsed = loads_relaxed(candidate)
    if isinstance(parsed, dict):
        return parsed
    logger.error(f"[provider] Unparseable JSON object: {candidate[:300]}")
    return None


def first_object(text: str) -> Optional[str]:
    """First balanced ``{...}`` substring; braces inside strings are skipped."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(text[start:], start):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def loads_relaxed(text: str) -> Any:
    """json.loads, retried once with comments and trailing commas removed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    repaired = LINE_COMMENT_RE.sub(r"\1", BLOCK_COMMENT_RE.sub("", text))
    previous = None
    while previous != repaired:
        previous = repaired
        repaired = TRAILING_COMMA_RE.sub(r"\1", repaired)

    try:
        return json.loads(repaired)
    except json.JSONDecodeError as e:
        logger.debug(f"[provider] JSON repair failed: {e}")
        return None
