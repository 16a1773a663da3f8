"""Recovering structured JSON from free-form model output."""

from __future__ import annotations

import json
from typing import Any

import structlog

from flyer_pipeline.errors import ValidationError

logger = structlog.get_logger()

_RAW_LOG_LIMIT = 500


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```), if any."""
    text = text.strip()
    if not text.startswith("```"):
        return text
    text = text.removeprefix("```")
    for lang in ("json", "JSON"):
        text = text.removeprefix(lang)
    text = text.lstrip("\n")
    return text.rsplit("```", 1)[0].strip()


def _balanced_span(text: str, start: int) -> str | None:
    """Return text[start:end] where end closes the bracket opened at ``start``."""
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_json(text: str, *, context: str = "model") -> Any:
    """Parse the first JSON object or array in ``text``.

    Accepts bare JSON, fenced JSON, and JSON wrapped in prose. Raises
    ValidationError (and logs the raw text) when nothing parses.
    """
    cleaned = strip_code_fence(text or "")
    if cleaned:
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass

        starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
        if starts:
            span = _balanced_span(cleaned, min(starts))
            if span is not None:
                try:
                    return json.loads(span)
                except json.JSONDecodeError:
                    pass

    logger.warning("llm_json_unparseable", context=context, raw=(text or "")[:_RAW_LOG_LIMIT])
    raise ValidationError(f"{context} returned no parseable JSON", raw=text)


def response_text(response: Any) -> str:
    """Concatenate the text blocks of an Anthropic Messages response."""
    text = ""
    for block in response.content:
        if hasattr(block, "text"):
            text += block.text
    return text
