"""Pydantic models for registrations, attendees and pricing tiers."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from payproof.models.payment import Provenance
from payproof.models.receipt import FieldKind

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^(\+63|0)?9\d{9}$")


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_phone(value: str) -> str:
    return re.sub(r"[\s-]", "", value.strip())


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class Church(_CamelModel):
    """Home church of the registering group."""

    name: str = Field(min_length=1)
    city: str = Field(min_length=1)
    province: str = Field(min_length=1)

    @field_validator("name", "city", "province", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value


class Attendee(_CamelModel):
    """Additional attendee; a phone number is required, email is optional."""

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: str
    category: str = Field(min_length=1)
    ministry_role: Optional[str] = None

    @field_validator("first_name", "last_name", "category", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, value: object) -> object:
        if value is None:
            return None
        if not isinstance(value, str):
            return value
        normalized = normalize_email(value)
        if not normalized:
            return None
        if not EMAIL_PATTERN.match(normalized):
            raise ValueError("invalid email address")
        return normalized

    @field_validator("phone", mode="before")
    @classmethod
    def _check_phone(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        normalized = normalize_phone(value)
        if not PHONE_PATTERN.match(normalized):
            raise ValueError("invalid Philippine mobile number")
        return normalized


class PrimaryAttendee(Attendee):
    """Primary contact; the email identifies the registration."""

    email: str

    @field_validator("email", mode="after")
    @classmethod
    def _require_email(cls, value: Optional[str]) -> str:
        if not value:
            raise ValueError("email is required for the primary attendee")
        return value


class PricingTier(_CamelModel):
    """Attendee category with its price."""

    id: str
    name: str
    price: Decimal = Field(ge=0)
    is_active: bool = True


class RegistrationDraft(_CamelModel):
    """Validated registration awaiting submission."""

    church: Church
    primary_attendee: PrimaryAttendee
    additional_attendees: List[Attendee] = Field(default_factory=list)

    @property
    def attendees(self) -> List[Attendee]:
        return [self.primary_attendee, *self.additional_attendees]


class PaymentDetails(_CamelModel):
    """Payment block persisted with a registration."""

    proof_url: Optional[str] = None
    proof_key: Optional[str] = None
    amount: Optional[Decimal] = None
    date: Optional[str] = None
    time: Optional[str] = None
    reference_number: Optional[str] = None
    bank: Optional[str] = None
    provenance: Dict[FieldKind, Provenance] = Field(default_factory=dict)
    suggestions: Dict[FieldKind, Optional[str]] = Field(default_factory=dict)
    ocr_source: Optional[str] = None
    ocr_raw_text: Optional[str] = None


class RegistrationRecord(_CamelModel):
    """Registration as persisted in the document store."""

    registration_id: str
    short_code: str
    short_code_suffix: str
    primary_attendee: PrimaryAttendee
    additional_attendees: List[Attendee] = Field(default_factory=list)
    church: Church
    payment: PaymentDetails = Field(default_factory=PaymentDetails)
    total_amount: Decimal
    pricing_tier: str
    created_at: datetime

    def to_document(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_document(cls, document: str) -> "RegistrationRecord":
        return cls.model_validate_json(document)


class OrphanedBlob(BaseModel):
    """Uploaded proof that is not referenced by any registration record."""

    key: str
    registration_id: Optional[str] = None
    reason: str
    recorded_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("recorded_at", "resolved_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite drops tzinfo on the way back.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
