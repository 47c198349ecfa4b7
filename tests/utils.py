"""Shared builders and fakes for the test suite."""

from __future__ import annotations

import io
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from PIL import Image

from payproof.errors import DuplicateIdentityConflict, RegistrationIdTaken, ShortCodeTaken
from payproof.models.registration import (
    Attendee,
    Church,
    OrphanedBlob,
    PrimaryAttendee,
    RegistrationDraft,
    RegistrationRecord,
)
from payproof.ocr.engines import RecognizedText

GCASH_TEXT = "GCash receipt Amount: P1,250.00 Ref: 00123456789 2026-03-20 14:05"


def make_png(size: tuple[int, int] = (32, 16)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color="white").save(buffer, format="PNG")
    return buffer.getvalue()


def make_draft(
    email: str = "Maria.Santos@Example.com",
    primary_category: str = "regular",
    additional_categories: tuple[str, ...] = (),
) -> RegistrationDraft:
    return RegistrationDraft(
        church=Church(name="Grace Community Church", city="Quezon City", province="Metro Manila"),
        primary_attendee=PrimaryAttendee(
            first_name="Maria",
            last_name="Santos",
            email=email,
            phone="0917 123 4567",
            category=primary_category,
            ministry_role="Worship",
        ),
        additional_attendees=[
            Attendee(
                first_name=f"Guest{index}",
                last_name="Santos",
                email=None,
                phone="+639171234568",
                category=category,
                ministry_role=None,
            )
            for index, category in enumerate(additional_categories)
        ],
    )


def draft_payload(email: str = "maria@example.com", category: str = "regular") -> dict:
    """Camel-cased registration JSON as posted by the form."""

    return {
        "church": {"name": "Grace Community Church", "city": "Quezon City", "province": "Metro Manila"},
        "primaryAttendee": {
            "firstName": "Maria",
            "lastName": "Santos",
            "email": email,
            "phone": "09171234567",
            "category": category,
        },
        "additionalAttendees": [],
    }


class FakeRegistrationStore:
    """In-memory store honouring the unique id, email and short code constraints."""

    def __init__(self) -> None:
        self.records: Dict[str, RegistrationRecord] = {}
        self.orphans: Dict[str, OrphanedBlob] = {}
        self.create_calls = 0
        self.before_create: Optional[Callable[[], None]] = None
        self.lookup_failures: List[Exception] = []
        self.create_failures: List[Exception] = []

    def find_by_contact_identity(self, email: str) -> Optional[RegistrationRecord]:
        if self.lookup_failures:
            raise self.lookup_failures.pop(0)
        normalized = email.strip().lower()
        for record in self.records.values():
            if record.primary_attendee.email == normalized:
                return record
        return None

    def get(self, registration_id: str) -> Optional[RegistrationRecord]:
        return self.records.get(registration_id)

    def short_code_exists(self, short_code: str) -> bool:
        return any(record.short_code == short_code for record in self.records.values())

    def create(self, record: RegistrationRecord) -> RegistrationRecord:
        self.create_calls += 1
        if self.before_create is not None:
            hook, self.before_create = self.before_create, None
            hook()
        if self.create_failures:
            raise self.create_failures.pop(0)
        for existing in self.records.values():
            if existing.primary_attendee.email == record.primary_attendee.email:
                raise DuplicateIdentityConflict(existing.registration_id)
        if self.short_code_exists(record.short_code):
            raise ShortCodeTaken(record.short_code)
        if record.registration_id in self.records:
            raise RegistrationIdTaken(record.registration_id)
        self.records[record.registration_id] = record
        return record

    def record_orphaned_blob(self, key: str, registration_id: Optional[str], reason: str) -> None:
        self.orphans[key] = OrphanedBlob(
            key=key,
            registration_id=registration_id,
            reason=reason,
            recorded_at=datetime.now(timezone.utc),
        )

    def list_orphaned_blobs(self, include_resolved: bool = False) -> List[OrphanedBlob]:
        return [
            entry
            for entry in self.orphans.values()
            if include_resolved or entry.resolved_at is None
        ]

    def resolve_orphaned_blob(self, key: str) -> bool:
        entry = self.orphans.get(key)
        if entry is None or entry.resolved_at is not None:
            return False
        self.orphans[key] = entry.model_copy(update={"resolved_at": datetime.now(timezone.utc)})
        return True


class StubRecognizer:
    """Recognizer returning canned text, optionally slow or failing."""

    def __init__(
        self,
        source: str,
        text: str = "",
        confidence: Optional[float] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.source = source
        self._text = text
        self._confidence = confidence
        self._error = error
        self._delay = delay
        self.calls: List[int] = []

    def recognize(self, image_bytes: bytes) -> RecognizedText:
        self.calls.append(len(image_bytes))
        if self._delay:
            time.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return RecognizedText(text=self._text, source=self.source, confidence=self._confidence)
