from __future__ import annotations

import logging
from collections import Counter

from schemas.entities import MaskMapping, ScanResult
from shield.masker import mask, restore
from shield.scanner import PIIScanner, get_scanner

logger = logging.getLogger(__name__)


class ShieldPipeline:
    """Masks one outbound prompt and restores the matching response.

    Typical flow
    ------------
    1. **Prompt preparation** -- ``process_prompt`` scans the prompt and
       replaces every PII span with a ``{{FP_<CATEGORY>_<NN>}}`` placeholder.
    2. **Response restoration** -- ``restore_response`` puts the original
       values back into the remote model's answer.

    One pipeline serves exactly one request; the mapping is never persisted
    and is dropped together with the pipeline.
    """

    def __init__(self, scanner: PIIScanner | None = None) -> None:
        self._scanner = scanner or get_scanner()
        self.mapping: MaskMapping = {}
        self.scan_result = ScanResult()

    @property
    def applied(self) -> bool:
        """True once ``process_prompt`` replaced at least one span."""
        return bool(self.mapping)

    # ------------------------------------------------------------------
    # Prompt processing
    # ------------------------------------------------------------------

    def process_prompt(self, prompt: str) -> str:
        """Return *prompt* with all detected PII replaced by placeholders."""
        self.scan_result = self._scanner.scan(prompt)
        masked, self.mapping = mask(prompt, self.scan_result)

        if self.scan_result.has_pii:
            logger.info(
                "Prompt masked: %d PII spans %s",
                len(self.scan_result.matches),
                dict(Counter(m.category.value for m in self.scan_result.matches)),
            )
        return masked

    # ------------------------------------------------------------------
    # Response restoration
    # ------------------------------------------------------------------

    def restore_response(self, response: str) -> str:
        """Replace placeholders in *response* with the original values."""
        return restore(response, self.mapping)
