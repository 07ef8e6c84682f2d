from __future__ import annotations

import bisect
import logging
from collections import Counter
from typing import Iterable

from schemas.entities import PIIMatch, ScanResult
from shield.patterns import MAX_MATCH_LENGTH, CategoryRecognizer, get_registry

logger = logging.getLogger(__name__)


class PIIScanner:
    """Runs every category recognizer and resolves overlapping candidates.

    Pure and deterministic: the same text always yields the same
    :class:`ScanResult`, and text without PII yields an empty result rather
    than an error.

    Large texts are scanned in fixed-size chunks so the cost stays linear in
    the input length.  Each chunk is widened by a margin on both sides and
    only matches *starting* inside the chunk proper are kept, so a value
    straddling a chunk boundary is still found exactly once, with its full
    lookbehind/lookahead context.
    """

    _CHUNK_SIZE = 4096  # characters per Presidio call
    _CHUNK_MARGIN = MAX_MATCH_LENGTH + 16  # plus room for lookaround context

    def __init__(
        self,
        recognizers: Iterable[CategoryRecognizer] | None = None,
        chunk_size: int | None = None,
    ) -> None:
        # Position in this tuple is the priority rank (0 = highest).
        self._recognizers = tuple(recognizers) if recognizers is not None else get_registry()
        self._chunk_size = chunk_size or self._CHUNK_SIZE

    # -- public API ----------------------------------------------------------

    def scan(self, text: str) -> ScanResult:
        candidates: list[tuple[int, PIIMatch]] = []
        for rank, recognizer in enumerate(self._recognizers):
            candidates.extend((rank, match) for match in self._find(recognizer, text))

        matches = self._resolve_overlaps(candidates)
        if matches:
            logger.debug(
                "PII scan found %d matches: %s",
                len(matches),
                dict(Counter(m.category.value for m in matches)),
            )
        return ScanResult(matches=tuple(matches))

    # -- chunking ------------------------------------------------------------

    def _find(self, recognizer: CategoryRecognizer, text: str) -> list[PIIMatch]:
        if len(text) <= self._chunk_size:
            return recognizer.find(text)

        found: list[PIIMatch] = []
        for core_start in range(0, len(text), self._chunk_size):
            core_end = min(core_start + self._chunk_size, len(text))
            offset = max(0, core_start - self._CHUNK_MARGIN)
            window = text[offset : core_end + self._CHUNK_MARGIN]
            for m in recognizer.find(window):
                start = m.start + offset
                if core_start <= start < core_end:
                    found.append(PIIMatch(m.category, m.value, start, m.end + offset))
        return found

    # -- overlap resolution --------------------------------------------------

    @staticmethod
    def _resolve_overlaps(candidates: list[tuple[int, PIIMatch]]) -> list[PIIMatch]:
        """Keep the highest-priority candidate wherever spans intersect.

        Ties on priority prefer the earlier start, then the longer span.
        Survivors are returned sorted by start offset.
        """
        candidates.sort(
            key=lambda c: (c[0], c[1].start, -(c[1].end - c[1].start)),
        )

        # Kept spans are disjoint, so sorting by start also sorts by end and
        # only the two neighbours of an insertion point can overlap it.
        starts: list[int] = []
        kept: list[PIIMatch] = []
        for _, match in candidates:
            i = bisect.bisect_right(starts, match.start)
            if i > 0 and kept[i - 1].end > match.start:
                continue
            if i < len(kept) and kept[i].start < match.end:
                continue
            starts.insert(i, match.start)
            kept.insert(i, match)
        return kept


_default_scanner: PIIScanner | None = None


def get_scanner() -> PIIScanner:
    global _default_scanner
    if _default_scanner is None:
        _default_scanner = PIIScanner()
    return _default_scanner


def scan_pii(text: str) -> ScanResult:
    """Scan *text* with the default pattern registry."""
    return get_scanner().scan(text)
