"""Lightweight content intent detection.

Classifies a piece of captured text (JSON, code, table, list, prose) with
cheap heuristics and proposes up to three follow-up actions.  No model is
called: this runs on every capture, before the user decides anything.
"""

from __future__ import annotations

import logging
import re
import uuid

from schemas.entities import ActionChip, ActionType, ContentType

logger = logging.getLogger(__name__)

MAX_CHIPS = 3

_JSON_START = re.compile(r"^\s*[\{\[]")
_CODE_KEYWORD = re.compile(
    r"(function|class|def|pub fn|const|let|var|import|#include|package)\s+\w+"
)
_LIST_ITEM = re.compile(r"^(\s*[-*+•]\s+|\s*\d+[.)]\s+)", re.MULTILINE)
_URL = re.compile(r"https?://[^\s]+")

# (label, action type, payload) per content type, in display order.
_CHIPS: dict[ContentType, list[tuple[str, ActionType, str]]] = {
    ContentType.JSON: [
        ("Format JSON", ActionType.AI_PROMPT, "Format this JSON with proper indentation"),
        ("Minify JSON", ActionType.AI_PROMPT, "Minify this JSON to a single line"),
        ("Convert to YAML", ActionType.AI_PROMPT, "Convert this JSON to YAML format"),
    ],
    ContentType.CODE: [
        ("Add comments", ActionType.AI_PROMPT, "Add clear comments to explain this code"),
        ("Refactor", ActionType.AI_PROMPT, "Refactor this code for better readability and performance"),
        ("Explain code", ActionType.AI_PROMPT, "Explain what this code does in simple terms"),
    ],
    ContentType.TABLE: [
        ("To Markdown table", ActionType.AI_PROMPT, "Convert this table to Markdown table format"),
        ("Extract first column", ActionType.AI_PROMPT, "Extract only the first column values"),
        ("Sort rows", ActionType.AI_PROMPT, "Sort this table by the first column"),
    ],
    ContentType.LIST: [
        ("Sort list", ActionType.LOCAL_RULE, "sort_list"),
        ("Remove duplicates", ActionType.AI_PROMPT, "Remove duplicate items from this list"),
        ("Comma-separated", ActionType.AI_PROMPT, "Convert this list to comma-separated values"),
    ],
    ContentType.UNKNOWN: [
        ("Remove empty lines", ActionType.LOCAL_RULE, "remove_empty_lines"),
        ("Trim whitespace", ActionType.LOCAL_RULE, "trim_whitespace"),
        ("Collapse spaces", ActionType.LOCAL_RULE, "collapse_spaces"),
    ],
}

_SUMMARIZE = ("Summarize", ActionType.AI_PROMPT, "Summarize the key points of this text in bullet points")
_FIX_GRAMMAR = ("Fix grammar", ActionType.AI_PROMPT, "Fix grammar and spelling errors")
_EXTRACT_URLS = ("Extract links", ActionType.LOCAL_RULE, "extract_urls")
_TRANSLATE = ("Translate to English", ActionType.AI_PROMPT, "Translate this text to English")


def detect_content_type(text: str) -> ContentType:
    trimmed = text.strip()

    # Structured data first.
    if _JSON_START.match(trimmed) and trimmed.endswith(("}", "]")):
        return ContentType.JSON

    if _CODE_KEYWORD.search(text):
        return ContentType.CODE

    lines = text.splitlines()
    if len(lines) >= 2:
        indented = sum(1 for l in lines if l.startswith(("    ", "\t")))
        if indented >= 2 and indented >= len(lines) // 3:
            return ContentType.CODE

        with_tabs = sum(1 for l in lines if "\t" in l)
        with_commas = sum(1 for l in lines if l.count(",") >= 2)
        if with_tabs >= len(lines) / 2 or with_commas >= len(lines) / 2:
            return ContentType.TABLE

    if len(_LIST_ITEM.findall(text)) >= 2:
        return ContentType.LIST

    sentences = sum(text.count(c) for c in ".!?")
    if sentences >= 2 and len(text) > 50:
        return ContentType.PROSE

    return ContentType.UNKNOWN


def _prose_chips(text: str) -> list[tuple[str, ActionType, str]]:
    chips = []
    if len(text) > 500:
        chips.append(_SUMMARIZE)
    chips.append(_FIX_GRAMMAR)
    if _URL.search(text):
        chips.append(_EXTRACT_URLS)
    if not text.isascii():
        chips.append(_TRANSLATE)
    return chips


def detect_content_intent(text: str) -> list[ActionChip]:
    """Return up to three suggested actions for *text* (none for empty text)."""
    if not text:
        return []

    content_type = detect_content_type(text)
    if content_type is ContentType.PROSE:
        specs = _prose_chips(text)
    else:
        specs = _CHIPS[content_type]

    chips = [
        ActionChip(
            id=str(uuid.uuid4()),
            label=label,
            action_type=action_type,
            payload=payload,
            shortcut=str(i),
        )
        for i, (label, action_type, payload) in enumerate(specs[:MAX_CHIPS], start=1)
    ]
    logger.debug("Detected %s content, %d chips", content_type.value, len(chips))
    return chips
