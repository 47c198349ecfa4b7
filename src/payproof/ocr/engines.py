"""Text recognition backends for payment proof images."""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

import httpx
import pytesseract
from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError
from pytesseract import Output

from payproof.ocr.parser import signal_score
from payproof.ocr.sanitize import preview

logger = logging.getLogger(__name__)

TESSERACT_SOURCE = "tesseract"
REMOTE_SOURCE = "remote-vision"


class RecognizerUnavailable(RuntimeError):
    """Raised when a recognition backend cannot be reached or run."""


@dataclass(frozen=True)
class RecognizedText:
    text: str
    source: str
    confidence: Optional[float] = None


class Recognizer(Protocol):
    source: str

    def recognize(self, image_bytes: bytes) -> RecognizedText:
        ...


class TesseractRecognizer:
    """Local recognition with Tesseract.

    The image is converted to grayscale, contrast-stretched, denoised and
    rotated upright (when orientation detection succeeds), then read with each
    configured page segmentation mode. The reading that looks most like a
    receipt wins.
    """

    source = TESSERACT_SOURCE

    def __init__(self, *, lang: str = "eng", psm_modes: Sequence[int] = (6, 11)) -> None:
        self._lang = lang
        self._psm_modes = tuple(psm_modes) or (6,)

    def recognize(self, image_bytes: bytes) -> RecognizedText:
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            logger.warning("Receipt image could not be decoded for OCR: %s", exc)
            return RecognizedText(text="", source=self.source, confidence=0.0)

        try:
            processed = self._preprocess_image(image)
            best: Optional[Tuple[float, str, Optional[float]]] = None
            for psm in self._psm_modes:
                text, confidence = self._read(processed, psm)
                rank = signal_score(text)
                logger.debug(
                    "Tesseract psm=%s signal=%.1f confidence=%s text=%s",
                    psm,
                    rank,
                    confidence,
                    preview(text),
                )
                if best is None or rank > best[0]:
                    best = (rank, text, confidence)
        except pytesseract.TesseractNotFoundError as exc:
            raise RecognizerUnavailable("Tesseract is not installed or not on PATH.") from exc
        except RuntimeError as exc:
            raise RecognizerUnavailable(f"Tesseract failed: {exc}") from exc

        assert best is not None
        _, text, confidence = best
        return RecognizedText(text=text, source=self.source, confidence=confidence)

    def _preprocess_image(self, image: Image.Image) -> Image.Image:
        processed = ImageOps.exif_transpose(image)
        processed = ImageOps.grayscale(processed)
        processed = ImageOps.autocontrast(processed)
        processed = processed.filter(ImageFilter.MedianFilter(size=3))

        try:
            osd = pytesseract.image_to_osd(processed, lang=self._lang)
        except pytesseract.TesseractError as exc:
            # Orientation detection fails on sparse images; read them as-is.
            logger.debug("Orientation detection skipped: %s", exc)
            return processed
        rotation = self._parse_rotation_from_osd(osd)
        if rotation:
            processed = processed.rotate(-rotation, expand=True, fillcolor=255)
        return processed

    @staticmethod
    def _parse_rotation_from_osd(osd: str) -> int:
        match = re.search(r"Rotate: (\d+)", osd)
        if not match:
            return 0
        return int(match.group(1)) % 360

    def _read(self, image: Image.Image, psm: int) -> Tuple[str, Optional[float]]:
        config = f"--psm {psm}"
        text = pytesseract.image_to_string(image, lang=self._lang, config=config).strip()
        data = pytesseract.image_to_data(
            image, lang=self._lang, config=config, output_type=Output.DICT
        )

        confidences: List[float] = []
        for raw_text, raw_conf in zip(data.get("text", []), data.get("conf", [])):
            if not (raw_text or "").strip():
                continue
            try:
                confidence = float(raw_conf)
            except (TypeError, ValueError):
                continue
            if confidence >= 0:
                confidences.append(confidence / 100.0)

        average = sum(confidences) / len(confidences) if confidences else None
        return text, average


class HttpOcrRecognizer:
    """Remote recognition service reached over HTTP.

    The image is POSTed as the request body; the service answers with JSON of
    the form ``{"text": "...", "confidence": 0.93}``. Confidence may be given
    on a 0-1 or 0-100 scale.
    """

    source = REMOTE_SOURCE

    def __init__(
        self,
        *,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def recognize(self, image_bytes: bytes) -> RecognizedText:
        headers = {"Content-Type": "application/octet-stream"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self._url, content=image_bytes, headers=headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise RecognizerUnavailable(f"Remote OCR request failed: {exc}") from exc
        except ValueError as exc:
            raise RecognizerUnavailable("Remote OCR returned invalid JSON.") from exc

        if not isinstance(body, dict):
            raise RecognizerUnavailable("Remote OCR returned an unexpected payload.")
        text = str(body.get("text") or "").strip()
        return RecognizedText(
            text=text,
            source=self.source,
            confidence=_normalize_confidence(body.get("confidence")),
        )


def _normalize_confidence(value: object) -> Optional[float]:
    if value is None:
        return None
    try:
        confidence = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if confidence > 1.0:
        confidence /= 100.0
    return max(0.0, min(1.0, confidence))


__all__ = [
    "HttpOcrRecognizer",
    "RecognizedText",
    "Recognizer",
    "RecognizerUnavailable",
    "TesseractRecognizer",
    "REMOTE_SOURCE",
    "TESSERACT_SOURCE",
]
