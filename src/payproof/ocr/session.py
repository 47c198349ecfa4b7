"""Per-registrant intake session where the most recent upload wins."""

from __future__ import annotations

import logging
from typing import Optional

from payproof.errors import ExtractionUnavailable
from payproof.models.payment import PaymentFieldState
from payproof.models.receipt import ExtractionResult, FieldKind, RawExtraction, ReceiptImage
from payproof.ocr.extractor import ReceiptTextExtractor
from payproof.ocr.parser import CandidateParser
from payproof.ocr.reconciler import (
    DEFAULT_MIN_CONFIDENCE,
    UNAVAILABLE_SOURCE,
    PaymentForm,
    select_winners,
)

logger = logging.getLogger(__name__)


class ReceiptIntakeSession:
    """Couple file selection, extraction and the editable payment form.

    Each selection bumps a generation counter. An extraction that finishes
    after a newer file was selected is dropped and never touches the form.
    """

    def __init__(
        self,
        extractor: ReceiptTextExtractor,
        *,
        parser: Optional[CandidateParser] = None,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        form: Optional[PaymentForm] = None,
    ) -> None:
        self._extractor = extractor
        self._parser = parser or CandidateParser()
        self._min_confidence = min_confidence
        self.form = form or PaymentForm()
        self._generation = 0
        self._image: Optional[ReceiptImage] = None
        self._result: Optional[ExtractionResult] = None

    @property
    def image(self) -> Optional[ReceiptImage]:
        return self._image

    @property
    def result(self) -> Optional[ExtractionResult]:
        return self._result

    async def select_file(self, image: ReceiptImage) -> Optional[ExtractionResult]:
        """Validate and extract ``image``; return ``None`` if superseded.

        Invalid files raise ``ValidationFailure`` and leave the session as it
        was.
        """

        self._extractor.validate(image)
        self._generation += 1
        generation = self._generation
        self._image = image
        self._result = None
        self.form.reset()

        try:
            raw = await self._extractor.extract(image)
        except ExtractionUnavailable as exc:
            logger.warning("Extraction unavailable, falling back to manual entry: %s", exc)
            raw = RawExtraction(raw_text="", source=UNAVAILABLE_SOURCE)

        if generation != self._generation:
            logger.debug(
                "Discarding extraction for generation %s; current is %s",
                generation,
                self._generation,
            )
            return None

        candidates = self._parser.parse(raw)
        result = select_winners(candidates, raw, min_confidence=self._min_confidence)
        self.form.apply(result)
        self._result = result
        return result

    def edit(self, kind: FieldKind, value: Optional[str]) -> PaymentFieldState:
        return self.form.edit(kind, value)


__all__ = ["ReceiptIntakeSession"]
