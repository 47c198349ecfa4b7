"""Scoring table for extraction candidates.

Every pattern the parser knows has a base confidence, a ceiling and a
specificity rank. Contextual boosts and penalties are added to the base and
the result is clamped to ``[0.0, ceiling]``, so the ordering between pattern
families is fixed by the table rather than by the boosts.

Confidence values are only comparable within one field kind.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

__all__ = [
    "PatternScore",
    "SCORE_TABLE",
    "score",
    "specificity",
    "amount_confidence",
    "reference_confidence",
    "bank_confidence",
    "datetime_confidence",
    "receipt_signal",
    "MANUAL_ENTRY_SIGNAL",
]


@dataclass(frozen=True)
class PatternScore:
    base: float
    ceiling: float
    specificity: int


SCORE_TABLE: Dict[str, PatternScore] = {
    # Date and time. A full timestamp outranks every bare date or time.
    "datetime.iso": PatternScore(0.92, 0.98, 10),
    "datetime.adjacent": PatternScore(0.76, 0.86, 8),
    "date.iso": PatternScore(0.70, 0.80, 6),
    "date.month_name": PatternScore(0.68, 0.78, 5),
    "date.day_month": PatternScore(0.66, 0.76, 5),
    "date.numeric": PatternScore(0.58, 0.70, 4),
    "date.noisy": PatternScore(0.52, 0.62, 3),
    "time.meridiem": PatternScore(0.62, 0.76, 5),
    "time.clock": PatternScore(0.55, 0.70, 4),
    # Amount.
    "amount.labeled": PatternScore(0.80, 0.97, 7),
    "amount.currency": PatternScore(0.66, 0.88, 5),
    "amount.bare": PatternScore(0.30, 0.55, 1),
    # Reference number.
    "reference.labeled": PatternScore(0.86, 0.96, 7),
    "reference.confirmation": PatternScore(0.78, 0.92, 6),
    "reference.transaction": PatternScore(0.76, 0.90, 6),
    "reference.trace": PatternScore(0.70, 0.86, 5),
    "reference.receipt": PatternScore(0.66, 0.84, 4),
    "reference.bare": PatternScore(0.40, 0.56, 1),
    # Bank.
    "bank.from_context": PatternScore(0.86, 0.95, 6),
    "bank.to_context": PatternScore(0.76, 0.86, 5),
    "bank.keyword": PatternScore(0.64, 0.78, 4),
    "bank.fuzzy": PatternScore(0.38, 0.55, 1),
}

# Receipt-signal score below which manual entry is recommended.
MANUAL_ENTRY_SIGNAL = 30


def score(pattern: str, adjustment: float = 0.0) -> float:
    """Return the clamped confidence for ``pattern`` after ``adjustment``."""

    entry = SCORE_TABLE[pattern]
    return round(max(0.0, min(entry.ceiling, entry.base + adjustment)), 4)


def specificity(pattern: str) -> int:
    return SCORE_TABLE[pattern].specificity


def amount_confidence(
    pattern: str,
    *,
    currency_marker: bool,
    label_gap: Optional[int],
    position: float,
    penalized: bool,
    largest: bool,
) -> float:
    """Score an amount token.

    Boosts:
    - currency marker next to the number: +0.08
    - amount label right before it: up to +0.06, shrinking with the gap
    - largest amount of its pattern family: +0.04
    - early in the text: up to +0.03
    Penalties:
    - fee/balance/discount context: -0.30
    """

    adjustment = 0.0
    if currency_marker and pattern != "amount.currency":
        adjustment += 0.08
    if label_gap is not None:
        adjustment += 0.06 * max(0.0, 1.0 - label_gap / 16.0)
    if largest:
        adjustment += 0.04
    adjustment += 0.03 * max(0.0, 1.0 - position)
    if penalized:
        adjustment -= 0.30
    return score(pattern, adjustment)


def reference_confidence(pattern: str, value: str, *, phone_like: bool = False) -> float:
    """Score a reference number; 10-16 character tokens are the common shape."""

    adjustment = 0.0
    digits = sum(1 for char in value if char.isdigit())
    if 10 <= len(value) <= 16:
        adjustment += 0.05
    if digits < len(value) // 2:
        adjustment -= 0.10
    if phone_like:
        adjustment -= 0.20
    return score(pattern, adjustment)


def bank_confidence(pattern: str, similarity: Optional[float] = None) -> float:
    """Score a bank hit; fuzzy hits scale with string similarity (0-100)."""

    adjustment = 0.0
    if similarity is not None:
        adjustment += 0.17 * max(0.0, min(1.0, (similarity - 85.0) / 15.0))
    return score(pattern, adjustment)


def datetime_confidence(pattern: str, *, labeled: bool = False) -> float:
    return score(pattern, 0.04 if labeled else 0.0)


def receipt_signal(text: str, money_hits: int, keyword_hits: int) -> float:
    """Rough measure of how receipt-like a block of text is.

    Long, digit-dense text with currency markers and receipt vocabulary scores
    high; empty text scores far below any real recognition.
    """

    if not text:
        return -1e6
    digits = sum(1 for char in text if char.isdigit())
    density = digits / max(10, len(text))
    return len(text) * 0.1 + digits * 1.5 + money_hits * 8 + keyword_hits * 5 + density * 40
