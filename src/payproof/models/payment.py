"""Editable payment field state with provenance tracking."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from payproof.models.receipt import FieldKind


class Provenance(str, Enum):
    """Who produced the current value of a payment field."""

    UNSET = "unset"
    AUTO_FILLED = "auto-filled"
    USER_MODIFIED = "user-modified"


class PaymentFieldState(BaseModel):
    """Current value of one payment field and how it got there."""

    kind: FieldKind
    value: Optional[str] = None
    provenance: Provenance = Provenance.UNSET
    suggested: Optional[str] = None

    model_config = ConfigDict(frozen=True)
