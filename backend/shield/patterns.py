"""PII pattern registry.

One Presidio ``PatternRecognizer`` per :class:`PIICategory`.  No NLP engine
is loaded: every category is structured data that a regular expression can
describe, so the recognizers are driven directly instead of through an
``AnalyzerEngine``.

All quantifiers are bounded, which keeps matching linear in the input
length (no category can backtrack across more than its own length cap).
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache

from presidio_analyzer import Pattern, PatternRecognizer

from schemas.entities import PIICategory, PIIMatch

logger = logging.getLogger(__name__)

# Presidio defaults to IGNORECASE, which would widen the ID and key charsets.
_REGEX_FLAGS = re.DOTALL | re.MULTILINE

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

# Longest span any pattern below can match (an email at its caps).  The
# scanner's chunk margin depends on it.
MAX_MATCH_LENGTH = 64 + 1 + 253 + 1 + 24

# No trailing boundary: a key longer than the cap is still masked up to the
# cap instead of not matching at all.
API_KEY_PATTERNS = [
    Pattern(
        name="prefixed_api_key",
        regex=r"\b(?:sk|pk|api|key)-[A-Za-z0-9_-]{16,256}",
        score=0.9,
    ),
]

BANK_CARD_PATTERNS = [
    Pattern(
        name="bank_card_contiguous",
        regex=r"\b[3-6]\d{12,18}\b",
        score=0.5,
    ),
    Pattern(
        name="bank_card_grouped",
        regex=r"\b[3-6]\d{3}(?:[ -]\d{4}){3}(?:[ -]\d{1,3})?\b",
        score=0.5,
    ),
    Pattern(
        name="bank_card_amex_grouped",
        regex=r"\b3[47]\d{2}[ -]\d{6}[ -]\d{5}\b",
        score=0.5,
    ),
]

# Mainland China resident identity card: region, birth date, sequence, check.
NATIONAL_ID_PATTERNS = [
    Pattern(
        name="cn_resident_id",
        regex=(
            r"\b[1-9]\d{5}(?:19|20)\d{2}(?:0[1-9]|1[0-2])"
            r"(?:0[1-9]|[12]\d|3[01])\d{3}[\dXx]\b"
        ),
        score=0.85,
    ),
]

PHONE_PATTERNS = [
    Pattern(
        name="cn_mobile",
        regex=r"(?<![\d+])(?:\+86[ -]?)?1[3-9]\d{9}(?!\d)",
        score=0.8,
    ),
    Pattern(
        name="separated_phone",
        regex=(
            r"(?<![\w+.-])(?:\+\d{1,3}[ .-]?)?"
            r"(?:\(\d{2,4}\)[ .-]?|\d{2,4}[ .-])?"
            r"\d{3,4}[ .-]\d{4}(?![\w-]|\.\d)"
        ),
        score=0.6,
    ),
]

EMAIL_PATTERNS = [
    Pattern(
        name="email",
        regex=r"\b[A-Za-z0-9._%+-]{1,64}@[A-Za-z0-9.-]{1,253}\.[A-Za-z]{2,24}\b",
        score=0.95,
    ),
]

IP_ADDRESS_PATTERNS = [
    Pattern(
        name="ipv4",
        regex=(
            r"\b(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}"
            r"(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b"
        ),
        score=0.85,
    ),
]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def luhn_check(number: str) -> bool:
    """Mod-10 check over the digits of *number* (separators ignored).

    Card numbers are 13-19 digits long; anything else fails.
    """
    digits = [int(c) for c in number if c.isdigit()]
    if len(digits) < 13 or len(digits) > 19:
        return False

    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


# ---------------------------------------------------------------------------
# Recognizers
# ---------------------------------------------------------------------------


class CategoryRecognizer(PatternRecognizer):
    """Pattern recognizer bound to a single PII category."""

    def __init__(self, category: PIICategory, patterns: list[Pattern]) -> None:
        super().__init__(
            supported_entity=category.value,
            name=f"{category.name.title().replace('_', '')}Recognizer",
            patterns=patterns,
            global_regex_flags=_REGEX_FLAGS,
        )
        self.category = category

    def find(self, text: str) -> list[PIIMatch]:
        """Return every candidate span for this category in *text*."""
        if not text:
            return []
        results = self.analyze(text=text, entities=[self.category.value])
        return [
            PIIMatch(
                category=self.category,
                value=text[r.start : r.end],
                start=r.start,
                end=r.end,
            )
            for r in results
        ]


class BankCardRecognizer(CategoryRecognizer):
    """Bank card numbers; candidates failing the Luhn check are dropped."""

    def __init__(self) -> None:
        super().__init__(PIICategory.BANK_CARD, BANK_CARD_PATTERNS)

    def validate_result(self, pattern_text: str) -> bool:
        # False makes Presidio discard the candidate outright.
        return luhn_check(pattern_text)


# Highest priority first.  A more specific, higher-entropy pattern wins over
# a generic one that could match a substring of it.
CATEGORY_PRIORITY: tuple[PIICategory, ...] = (
    PIICategory.API_KEY,
    PIICategory.BANK_CARD,
    PIICategory.NATIONAL_ID,
    PIICategory.PHONE,
    PIICategory.EMAIL,
    PIICategory.IP_ADDRESS,
)

_CATEGORY_PATTERNS: dict[PIICategory, list[Pattern]] = {
    PIICategory.API_KEY: API_KEY_PATTERNS,
    PIICategory.NATIONAL_ID: NATIONAL_ID_PATTERNS,
    PIICategory.PHONE: PHONE_PATTERNS,
    PIICategory.EMAIL: EMAIL_PATTERNS,
    PIICategory.IP_ADDRESS: IP_ADDRESS_PATTERNS,
}


def build_recognizer(category: PIICategory) -> CategoryRecognizer:
    if category is PIICategory.BANK_CARD:
        return BankCardRecognizer()
    return CategoryRecognizer(category, _CATEGORY_PATTERNS[category])


@lru_cache
def get_registry() -> tuple[CategoryRecognizer, ...]:
    """All recognizers, ordered by :data:`CATEGORY_PRIORITY`."""
    registry = tuple(build_recognizer(c) for c in CATEGORY_PRIORITY)
    logger.info("PII pattern registry initialized (%d categories)", len(registry))
    return registry
