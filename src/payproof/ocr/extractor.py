"""Receipt text extraction with validation, timeouts and a remote fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from payproof import metrics
from payproof.config import Settings, get_settings
from payproof.errors import ExtractionUnavailable, ValidationFailure
from payproof.models.receipt import RawExtraction, ReceiptImage
from payproof.ocr.engines import (
    HttpOcrRecognizer,
    RecognizedText,
    Recognizer,
    RecognizerUnavailable,
    TesseractRecognizer,
)
from payproof.ocr.sanitize import preview

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = {
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/webp",
    "image/gif",
    "image/bmp",
    "image/tiff",
    "image/heic",
}

DEFAULT_MAX_RECEIPT_BYTES = 5 * 1024 * 1024


def validate_receipt_image(
    image: ReceiptImage, max_bytes: int = DEFAULT_MAX_RECEIPT_BYTES
) -> None:
    """Reject uploads that must never reach OCR or storage."""

    content_type = (image.content_type or "").lower()
    if content_type not in SUPPORTED_IMAGE_TYPES:
        raise ValidationFailure(
            "Payment proof must be an image.",
            {"file": f"Unsupported content type {image.content_type or 'unknown'}"},
        )
    size = max(image.size_bytes, len(image.content))
    if size == 0:
        raise ValidationFailure("Payment proof is empty.", {"file": "File is empty"})
    if size > max_bytes:
        raise ValidationFailure(
            "Payment proof is too large.",
            {"file": f"File exceeds {max_bytes // (1024 * 1024)} MB limit"},
        )


class ReceiptTextExtractor:
    """Run OCR against an uploaded proof without blocking the event loop."""

    def __init__(
        self,
        primary: Recognizer,
        *,
        fallback: Optional[Recognizer] = None,
        timeout_seconds: float = 20.0,
        fallback_threshold: float = 0.60,
        max_bytes: int = DEFAULT_MAX_RECEIPT_BYTES,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._timeout = timeout_seconds
        self._fallback_threshold = fallback_threshold
        self._max_bytes = max_bytes

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReceiptTextExtractor":
        settings = settings or get_settings()
        fallback: Optional[Recognizer] = None
        if settings.ocr_remote_url:
            fallback = HttpOcrRecognizer(
                url=settings.ocr_remote_url,
                api_key=settings.ocr_remote_api_key,
                timeout=settings.ocr_timeout_seconds,
            )
        return cls(
            TesseractRecognizer(
                lang=settings.ocr_default_lang, psm_modes=settings.ocr_psm_modes
            ),
            fallback=fallback,
            timeout_seconds=settings.ocr_timeout_seconds,
            fallback_threshold=settings.ocr_fallback_threshold,
            max_bytes=settings.max_receipt_bytes,
        )

    def validate(self, image: ReceiptImage) -> None:
        validate_receipt_image(image, self._max_bytes)

    async def extract(self, image: ReceiptImage) -> RawExtraction:
        """Return the raw text of ``image``.

        Empty text is a valid outcome. Raises ``ExtractionUnavailable`` when no
        backend could run or recognition exceeded the timeout.
        """

        self.validate(image)
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._recognize, image.content), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            metrics.EXTRACTIONS.labels(status="unavailable", source="timeout").inc()
            logger.warning("OCR timed out after %.1fs", self._timeout)
            raise ExtractionUnavailable(
                f"Text recognition timed out after {self._timeout:.0f}s.", timed_out=True
            ) from exc

        status = "ok" if raw.raw_text.strip() else "empty"
        metrics.EXTRACTIONS.labels(status=status, source=raw.source).inc()
        logger.info(
            "OCR finished source=%s confidence=%s chars=%s",
            raw.source,
            raw.confidence,
            len(raw.raw_text),
        )
        return raw

    def _recognize(self, content: bytes) -> RawExtraction:
        primary: Optional[RecognizedText] = None
        try:
            primary = self._primary.recognize(content)
        except RecognizerUnavailable as exc:
            logger.warning("Primary OCR backend %s unavailable: %s", self._primary.source, exc)

        if self._fallback is not None and self._needs_fallback(primary):
            try:
                secondary = self._fallback.recognize(content)
            except RecognizerUnavailable as exc:
                logger.warning("Fallback OCR backend %s failed: %s", self._fallback.source, exc)
            else:
                if secondary.text.strip() or primary is None:
                    logger.debug("Using fallback OCR text: %s", preview(secondary.text))
                    return _to_raw(secondary)

        if primary is None:
            metrics.EXTRACTIONS.labels(status="unavailable", source="unavailable").inc()
            raise ExtractionUnavailable("No text recognition backend is available.")
        return _to_raw(primary)

    def _needs_fallback(self, primary: Optional[RecognizedText]) -> bool:
        if primary is None:
            return True
        confidence = primary.confidence if primary.confidence is not None else 0.0
        return confidence < self._fallback_threshold


def _to_raw(recognized: RecognizedText) -> RawExtraction:
    confidence = recognized.confidence
    if confidence is not None:
        confidence = max(0.0, min(1.0, confidence))
    return RawExtraction(
        raw_text=recognized.text, source=recognized.source, confidence=confidence
    )


__all__ = [
    "DEFAULT_MAX_RECEIPT_BYTES",
    "ReceiptTextExtractor",
    "SUPPORTED_IMAGE_TYPES",
    "validate_receipt_image",
]
