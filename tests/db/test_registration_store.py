"""Tests for the SQLite registration store."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from payproof.db import SqlRegistrationStore
from payproof.db import registrations as registrations_module
from payproof.errors import (
    DuplicateIdentityConflict,
    PersistenceFailure,
    RegistrationIdTaken,
    ShortCodeTaken,
)
from payproof.models.payment import Provenance
from payproof.models.receipt import FieldKind
from payproof.models.registration import PaymentDetails, RegistrationRecord
from tests.utils import make_draft


def _record(
    registration_id: str = "REG-2026-ABCDEFGH",
    short_code: str = "K7M2QX",
    email: str = "maria.santos@example.com",
) -> RegistrationRecord:
    draft = make_draft(email=email, additional_categories=("student_senior",))
    return RegistrationRecord(
        registration_id=registration_id,
        short_code=short_code,
        short_code_suffix=short_code[-4:],
        primary_attendee=draft.primary_attendee,
        additional_attendees=draft.additional_attendees,
        church=draft.church,
        payment=PaymentDetails(
            proof_url="https://cdn.example.test/payment-proofs/x/proof.png",
            proof_key=f"payment-proofs/{registration_id}/proof.png",
            amount=Decimal("800.00"),
            date="2026-03-20",
            time="14:05",
            reference_number="00123456789",
            bank="GCash",
            provenance={
                FieldKind.AMOUNT: Provenance.USER_MODIFIED,
                FieldKind.DATE: Provenance.AUTO_FILLED,
                FieldKind.TIME: Provenance.AUTO_FILLED,
                FieldKind.REFERENCE_NUMBER: Provenance.AUTO_FILLED,
                FieldKind.BANK: Provenance.UNSET,
            },
            suggestions={FieldKind.AMOUNT: "1250.00"},
            ocr_source="tesseract",
            ocr_raw_text="GCash Amount: P1,250.00",
        ),
        total_amount=Decimal("800"),
        pricing_tier="regular",
        created_at=datetime(2026, 3, 20, 6, 5, tzinfo=timezone.utc),
    )


def test_round_trip_preserves_every_field():
    store = SqlRegistrationStore()
    record = _record()
    store.create(record)

    loaded = store.get(record.registration_id)

    assert loaded == record
    assert loaded.payment.provenance[FieldKind.AMOUNT] is Provenance.USER_MODIFIED


def test_document_uses_camel_case_keys():
    document = _record().to_document()

    assert '"registrationId"' in document
    assert '"shortCodeSuffix"' in document
    assert '"referenceNumber"' in document
    assert '"user-modified"' in document


def test_lookup_by_contact_identity_is_case_insensitive():
    store = SqlRegistrationStore()
    store.create(_record())

    found = store.find_by_contact_identity("  Maria.Santos@EXAMPLE.com")

    assert found is not None
    assert found.registration_id == "REG-2026-ABCDEFGH"
    assert store.find_by_contact_identity("someone@example.com") is None


def test_duplicate_email_maps_to_conflict():
    store = SqlRegistrationStore()
    store.create(_record())

    with pytest.raises(DuplicateIdentityConflict) as excinfo:
        store.create(_record(registration_id="REG-2026-ZZZZZZZZ", short_code="PQRS23"))

    assert excinfo.value.existing_registration_id == "REG-2026-ABCDEFGH"


def test_duplicate_short_code_maps_to_short_code_taken():
    store = SqlRegistrationStore()
    store.create(_record())

    with pytest.raises(ShortCodeTaken):
        store.create(_record(registration_id="REG-2026-ZZZZZZZZ", email="other@example.com"))

    assert store.short_code_exists("K7M2QX")
    assert not store.short_code_exists("PQRS23")


def test_duplicate_registration_id_maps_to_registration_id_taken():
    store = SqlRegistrationStore()
    store.create(_record())

    with pytest.raises(RegistrationIdTaken) as excinfo:
        store.create(_record(short_code="PQRS23", email="other@example.com"))

    assert excinfo.value.registration_id == "REG-2026-ABCDEFGH"
    assert not store.short_code_exists("PQRS23")


def test_operational_errors_are_transient(monkeypatch):
    def broken_session_scope():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(registrations_module, "session_scope", broken_session_scope)

    with pytest.raises(PersistenceFailure) as excinfo:
        SqlRegistrationStore().find_by_contact_identity("maria@example.com")

    assert excinfo.value.transient is True


def test_orphan_ledger_records_and_resolves():
    store = SqlRegistrationStore()
    store.record_orphaned_blob("payment-proofs/REG-2026-A/proof.png", "REG-2026-A", "upload timed out")
    store.record_orphaned_blob("payment-proofs/REG-2026-B/proof.png", None, "duplicate registration")

    pending = store.list_orphaned_blobs()
    assert [entry.key for entry in pending] == [
        "payment-proofs/REG-2026-A/proof.png",
        "payment-proofs/REG-2026-B/proof.png",
    ]
    assert pending[0].recorded_at.tzinfo is not None

    assert store.resolve_orphaned_blob("payment-proofs/REG-2026-A/proof.png") is True
    assert store.resolve_orphaned_blob("payment-proofs/REG-2026-A/proof.png") is False
    assert store.resolve_orphaned_blob("missing") is False

    assert [entry.key for entry in store.list_orphaned_blobs()] == [
        "payment-proofs/REG-2026-B/proof.png"
    ]
    assert len(store.list_orphaned_blobs(include_resolved=True)) == 2
