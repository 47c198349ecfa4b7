"""Pydantic models for payment proof images and their extracted fields."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class FieldKind(str, Enum):
    """Payment facts that can be extracted from a receipt."""

    AMOUNT = "amount"
    DATE = "date"
    TIME = "time"
    REFERENCE_NUMBER = "referenceNumber"
    BANK = "bank"


class ReceiptImage(BaseModel):
    """Uploaded payment proof as received from the client."""

    content: bytes = Field(repr=False)
    content_type: str
    size_bytes: int = Field(ge=0)
    filename: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_bytes(
        cls,
        content: bytes,
        content_type: Optional[str],
        filename: Optional[str] = None,
    ) -> "ReceiptImage":
        return cls(
            content=content,
            content_type=(content_type or "").strip().lower(),
            size_bytes=len(content),
            filename=filename,
        )


class RawExtraction(BaseModel):
    """Unmodified OCR output kept for audit."""

    raw_text: str = ""
    source: str
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True)


class FieldCandidate(BaseModel):
    """One strategy's guess for one payment field."""

    kind: FieldKind
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    pattern: str
    specificity: int = 0
    span: Optional[Tuple[int, int]] = None

    model_config = ConfigDict(frozen=True)


class ExtractionResult(BaseModel):
    """Candidates and selected winners for a single uploaded proof."""

    raw: RawExtraction
    candidates: List[FieldCandidate] = Field(default_factory=list)
    winners: Dict[FieldKind, Optional[FieldCandidate]] = Field(default_factory=dict)
    status: Literal["ok", "empty", "unavailable"] = "ok"
    manual_entry: bool = False

    def winner(self, kind: FieldKind) -> Optional[FieldCandidate]:
        return self.winners.get(kind)

    def value(self, kind: FieldKind) -> Optional[str]:
        candidate = self.winners.get(kind)
        return candidate.value if candidate is not None else None
