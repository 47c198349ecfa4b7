"""Utilities for normalizing and masking OCR output."""

from __future__ import annotations

import re

_CARD_PATTERN = re.compile(r"(?<!\d)(\d[\s-]?){12,19}(?!\d)")
_PESO_VARIANTS = re.compile(r"[₱₧]|\bPhp(?=[\s\d.])", re.IGNORECASE)
_HORIZONTAL_SPACE = re.compile(r"[^\S\n]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")


def normalize_text(value: str) -> str:
    """Collapse whitespace and unify peso markers so patterns see one spelling.

    Line breaks are kept because label/value pairs on receipts are usually
    laid out one per line.
    """

    text = value.replace("\r\n", "\n").replace("\r", "\n")
    text = _PESO_VARIANTS.sub("PHP", text)
    text = _HORIZONTAL_SPACE.sub(" ", text)
    text = _BLANK_LINES.sub("\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def mask_numbers(value: str) -> str:
    """Mask long numeric sequences that resemble account or card numbers."""

    def _mask(match: re.Match[str]) -> str:
        digits = re.sub(r"\D", "", match.group())
        if len(digits) < 12:
            return match.group()
        return digits[:4] + "*" * (len(digits) - 8) + digits[-4:]

    return _CARD_PATTERN.sub(_mask, value)


def preview(value: str, limit: int = 120) -> str:
    """Return a masked single-line excerpt suitable for log messages."""

    flattened = " ".join(value.split())
    if len(flattened) > limit:
        flattened = flattened[:limit] + "..."
    return mask_numbers(flattened)


__all__ = ["normalize_text", "mask_numbers", "preview"]
