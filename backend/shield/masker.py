from __future__ import annotations

import logging
import re

from schemas.entities import MaskMapping, MaskResult, PIICategory, ScanResult
from shield.scanner import scan_pii

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "FP"

# Matches placeholders like {{FP_PHONE_01}}, {{FP_EMAIL_12}}, {{FP_APIKEY_100}}.
PLACEHOLDER_RE = re.compile(r"\{\{" + PLACEHOLDER_PREFIX + r"_[A-Z]+_\d{2,}\}\}")


def make_placeholder(category: PIICategory, index: int) -> str:
    """Build the wire-visible token for the *index*-th match of *category*."""
    return "{{%s_%s_%02d}}" % (PLACEHOLDER_PREFIX, category.value, index)


def mask(text: str, scan_result: ScanResult) -> tuple[str, MaskMapping]:
    """Replace every match in *scan_result* with a placeholder.

    Matches are consumed left to right and the output is built from the
    original text's offsets, so placeholders of a different length never
    shift later replacements.  Sequence numbers are per category, start at
    1 and skip any placeholder already present in *text*, which keeps
    ``restore(mask(text))`` exact even for text that quotes placeholders.
    """
    if not scan_result.has_pii:
        return text, {}

    mapping: MaskMapping = {}
    counters: dict[PIICategory, int] = {}
    parts: list[str] = []
    cursor = 0
    quoted = set(PLACEHOLDER_RE.findall(text))

    for match in scan_result.matches:
        counter = counters.get(match.category, 0) + 1
        placeholder = make_placeholder(match.category, counter)
        while placeholder in quoted:
            counter += 1
            placeholder = make_placeholder(match.category, counter)
        counters[match.category] = counter

        parts.append(text[cursor : match.start])
        parts.append(placeholder)
        mapping[placeholder] = match.value
        cursor = match.end

    parts.append(text[cursor:])
    return "".join(parts), mapping


def restore(text: str, mapping: MaskMapping) -> str:
    """Replace every known placeholder in *text* with its original value.

    Placeholders missing from *mapping* (altered or invented by the remote
    model) are left verbatim.  A single regex pass means ``{{FP_PHONE_10}}``
    can never be corrupted by the replacement of ``{{FP_PHONE_01}}``.
    """
    if not mapping:
        return text

    unresolved: set[str] = set()

    def _replace(m: re.Match[str]) -> str:
        token = m.group(0)
        original = mapping.get(token)
        if original is None:
            unresolved.add(token)
            return token
        return original

    restored = PLACEHOLDER_RE.sub(_replace, text)
    if unresolved:
        logger.info("Left %d unknown placeholder(s) unresolved", len(unresolved))
    return restored


def mask_pii(text: str) -> MaskResult:
    """Scan *text* and mask everything found."""
    scan_result = scan_pii(text)
    masked, mapping = mask(text, scan_result)
    return MaskResult(masked=masked, mapping=mapping, scan_result=scan_result)


def restore_pii(text: str, mapping: MaskMapping) -> str:
    return restore(text, mapping)
