"""Shared pydantic models for Payproof."""

from .payment import PaymentFieldState, Provenance
from .receipt import (
    ExtractionResult,
    FieldCandidate,
    FieldKind,
    RawExtraction,
    ReceiptImage,
)
from .registration import (
    Attendee,
    Church,
    OrphanedBlob,
    PaymentDetails,
    PricingTier,
    PrimaryAttendee,
    RegistrationDraft,
    RegistrationRecord,
)

__all__ = [
    "Attendee",
    "Church",
    "ExtractionResult",
    "FieldCandidate",
    "FieldKind",
    "OrphanedBlob",
    "PaymentDetails",
    "PaymentFieldState",
    "PricingTier",
    "PrimaryAttendee",
    "Provenance",
    "RawExtraction",
    "ReceiptImage",
    "RegistrationDraft",
    "RegistrationRecord",
]
