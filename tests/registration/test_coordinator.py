"""Tests for the registration submission coordinator."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from payproof.errors import (
    DuplicateIdentityConflict,
    PersistenceFailure,
    ShortCodeTaken,
    UploadFailure,
    ValidationFailure,
)
from payproof.models.payment import Provenance
from payproof.models.receipt import FieldKind, RawExtraction, ReceiptImage
from payproof.models.registration import RegistrationRecord
from payproof.ocr.parser import parse
from payproof.ocr.reconciler import PaymentForm, select_winners
from payproof.pricing import load_pricing_tiers
from payproof.registration import RegistrationCoordinator
from payproof.registration.identifiers import IdentifierIssuer
from payproof.storage import LocalBlobStore, UploadAborted
from tests.utils import GCASH_TEXT, FakeRegistrationStore, make_draft, make_png

TIERS = load_pricing_tiers()
RAW = RawExtraction(raw_text=GCASH_TEXT, source="tesseract", confidence=0.9)


class FailingBlobStore:
    def __init__(self) -> None:
        self.keys = []

    def upload(self, data, key, on_progress=None, cancel=None):
        self.keys.append(key)
        if on_progress is not None:
            on_progress(0.4)
        raise OSError("disk full")


class SlowBlobStore:
    def upload(self, data, key, on_progress=None, cancel=None):
        for _ in range(200):
            if cancel is not None and cancel.is_set():
                raise UploadAborted(f"Upload of {key} was cancelled")
            time.sleep(0.01)
        return f"file:///{key}"


class StallingBlobStore:
    """Keeps reporting progress after the caller has given up on it."""

    def upload(self, data, key, on_progress=None, cancel=None):
        on_progress(0.2)
        time.sleep(0.3)
        on_progress(0.9)
        return f"file:///{key}"


@pytest.fixture()
def blobs(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "proofs", chunk_size=16)


@pytest.fixture()
def receipt() -> ReceiptImage:
    return ReceiptImage.from_bytes(make_png(), "image/png", "gcash receipt.png")


@pytest.fixture()
def form() -> PaymentForm:
    form = PaymentForm()
    form.apply(select_winners(parse(RAW), RAW))
    form.edit(FieldKind.BANK, "Maya")
    return form


def _coordinator(store, blobs, **kwargs) -> RegistrationCoordinator:
    kwargs.setdefault("retry_initial_delay", 0.0)
    return RegistrationCoordinator(store, blobs, TIERS, **kwargs)


def _other_record(draft) -> RegistrationRecord:
    return RegistrationRecord(
        registration_id="REG-2026-OTHER222",
        short_code="ZZZZZZ",
        short_code_suffix="ZZZZ",
        primary_attendee=draft.primary_attendee,
        church=draft.church,
        total_amount=Decimal("500"),
        pricing_tier="regular",
        created_at=datetime.now(timezone.utc),
    )


def test_paid_submission_uploads_proof_and_persists(fake_store, blobs, receipt, form, draft):
    progress = []
    coordinator = _coordinator(fake_store, blobs)

    record = asyncio.run(
        coordinator.submit(draft, receipt, form.as_mapping(), progress.append, extraction=RAW)
    )

    assert fake_store.records == {record.registration_id: record}
    assert record.total_amount == Decimal("500")
    assert record.pricing_tier == "regular"
    assert record.short_code_suffix == record.short_code[-4:]
    assert record.payment.proof_key == f"payment-proofs/{record.registration_id}/gcash_receipt.png"
    assert blobs.exists(record.payment.proof_key)
    assert record.payment.amount == Decimal("1250.00")
    assert record.payment.reference_number == "00123456789"
    assert record.payment.bank == "Maya"
    assert record.payment.provenance[FieldKind.BANK] is Provenance.USER_MODIFIED
    assert record.payment.provenance[FieldKind.AMOUNT] is Provenance.AUTO_FILLED
    assert record.payment.suggestions[FieldKind.BANK] == "GCash"
    assert record.payment.ocr_raw_text == GCASH_TEXT

    assert progress and progress[-1] == 1.0
    assert progress == sorted(set(progress))


def test_second_submission_with_same_email_is_rejected(fake_store, blobs, receipt, form, draft):
    coordinator = _coordinator(fake_store, blobs)
    first = asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    again = make_draft(email="  MARIA.SANTOS@example.com ")
    with pytest.raises(DuplicateIdentityConflict) as excinfo:
        asyncio.run(coordinator.submit(again, receipt, form.as_mapping()))

    assert excinfo.value.existing_registration_id == first.registration_id
    assert len(fake_store.records) == 1
    assert len(blobs.list_blobs("payment-proofs")) == 1


def test_concurrent_duplicate_caught_by_store_and_proof_orphaned(
    fake_store, blobs, receipt, form, draft
):
    other = _other_record(draft)
    fake_store.before_create = lambda: fake_store.records.setdefault(other.registration_id, other)
    coordinator = _coordinator(fake_store, blobs)

    with pytest.raises(DuplicateIdentityConflict) as excinfo:
        asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    assert excinfo.value.existing_registration_id == other.registration_id
    assert list(fake_store.records) == [other.registration_id]
    (orphan,) = fake_store.list_orphaned_blobs()
    assert blobs.exists(orphan.key)
    assert orphan.reason == "duplicate registration"


def test_free_registration_needs_no_proof(fake_store, blobs):
    draft = make_draft(primary_category="volunteer", additional_categories=("volunteer",))
    coordinator = _coordinator(fake_store, blobs)

    record = asyncio.run(coordinator.submit(draft))

    assert record.total_amount == Decimal("0")
    assert record.payment.proof_url is None
    assert record.payment.proof_key is None
    assert blobs.list_blobs() == []


def test_paid_registration_requires_proof(fake_store, blobs, form, draft):
    coordinator = _coordinator(fake_store, blobs)

    with pytest.raises(ValidationFailure) as excinfo:
        asyncio.run(coordinator.submit(draft, None, form.as_mapping()))

    assert "file" in excinfo.value.errors
    assert fake_store.records == {}


def test_paid_registration_requires_amount(fake_store, blobs, receipt, draft):
    coordinator = _coordinator(fake_store, blobs)

    with pytest.raises(ValidationFailure) as excinfo:
        asyncio.run(coordinator.submit(draft, receipt, PaymentForm().as_mapping()))

    assert "amount" in excinfo.value.errors


def test_unknown_category_rejected_before_anything_is_written(fake_store, blobs, receipt, form):
    draft = make_draft(primary_category="vip")
    coordinator = _coordinator(fake_store, blobs)

    with pytest.raises(ValidationFailure):
        asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    assert fake_store.create_calls == 0
    assert blobs.list_blobs() == []


def test_upload_failure_writes_nothing(fake_store, receipt, form, draft):
    coordinator = _coordinator(fake_store, FailingBlobStore())

    with pytest.raises(UploadFailure) as excinfo:
        asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    assert excinfo.value.timed_out is False
    assert excinfo.value.progress == pytest.approx(0.4)
    assert fake_store.create_calls == 0
    assert fake_store.records == {}


def test_upload_timeout_cancels_and_records_orphan(fake_store, receipt, form, draft):
    coordinator = _coordinator(fake_store, SlowBlobStore(), upload_timeout=0.05)

    with pytest.raises(UploadFailure) as excinfo:
        asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    assert excinfo.value.timed_out is True
    assert fake_store.records == {}
    assert [entry.reason for entry in fake_store.list_orphaned_blobs()] == ["upload timed out"]


def test_persistence_failure_reports_orphaned_proof(fake_store, blobs, receipt, form, draft):
    fake_store.create_failures.append(PersistenceFailure("disk I/O error"))
    coordinator = _coordinator(fake_store, blobs)

    with pytest.raises(PersistenceFailure) as excinfo:
        asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    key = excinfo.value.orphaned_blob_key
    assert key is not None and blobs.exists(key)
    assert [entry.key for entry in fake_store.list_orphaned_blobs()] == [key]
    assert fake_store.records == {}


def test_short_code_collision_at_persist_issues_new_code(fake_store, blobs, receipt, form, draft):
    fake_store.create_failures.append(ShortCodeTaken("AAAAAA"))
    coordinator = _coordinator(fake_store, blobs)

    record = asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    assert fake_store.create_calls == 2
    assert fake_store.records[record.registration_id].short_code == record.short_code
    assert fake_store.list_orphaned_blobs() == []


def test_no_short_code_left_at_persist_reports_orphaned_proof(
    fake_store, blobs, receipt, form, draft
):
    lookups = []

    def is_taken(code):
        lookups.append(code)
        return len(lookups) > 1

    fake_store.create_failures.append(ShortCodeTaken("AAAAAA"))
    issuer = IdentifierIssuer(year=2026, is_taken=is_taken, attempts=2)
    coordinator = _coordinator(fake_store, blobs, issuer=issuer)

    with pytest.raises(PersistenceFailure) as excinfo:
        asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    key = excinfo.value.orphaned_blob_key
    assert key is not None and blobs.exists(key)
    assert [entry.key for entry in fake_store.list_orphaned_blobs()] == [key]
    assert fake_store.records == {}


def test_registration_id_collision_at_persist_moves_proof_to_new_id(
    fake_store, blobs, receipt, form, draft
):
    fake_store.records["REG-2026-OTHER222"] = _other_record(
        make_draft(email="someone.else@example.com")
    )
    ids = iter(["REG-2026-OTHER222", "REG-2026-FRESH333"])
    issuer = IdentifierIssuer(
        year=2026, is_taken=fake_store.short_code_exists, id_factory=lambda year: next(ids)
    )
    coordinator = _coordinator(fake_store, blobs, issuer=issuer)

    record = asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    old_key = "payment-proofs/REG-2026-OTHER222/gcash_receipt.png"
    assert record.registration_id == "REG-2026-FRESH333"
    assert record.payment.proof_key == "payment-proofs/REG-2026-FRESH333/gcash_receipt.png"
    assert blobs.exists(record.payment.proof_key)
    assert fake_store.records["REG-2026-FRESH333"] == record
    assert fake_store.records["REG-2026-OTHER222"].short_code == "ZZZZZZ"
    assert [(e.key, e.reason) for e in fake_store.list_orphaned_blobs()] == [
        (old_key, "registration id collision")
    ]


def test_progress_stops_once_upload_times_out(fake_store, receipt, form, draft):
    progress = []
    coordinator = _coordinator(fake_store, StallingBlobStore(), upload_timeout=0.1)

    async def scenario():
        with pytest.raises(UploadFailure) as excinfo:
            await coordinator.submit(draft, receipt, form.as_mapping(), progress.append)
        # Let the worker finish and its queued update reach the loop.
        await asyncio.sleep(0.4)
        return excinfo.value

    failure = asyncio.run(scenario())

    assert failure.timed_out is True
    assert progress == [pytest.approx(0.2)]
    assert failure.progress == max(progress)


def test_transient_lookup_failure_is_retried(fake_store, blobs, receipt, form, draft):
    fake_store.lookup_failures.append(PersistenceFailure("database is locked", transient=True))
    coordinator = _coordinator(fake_store, blobs)

    record = asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))
    assert record.registration_id in fake_store.records


def test_permanent_lookup_failure_is_not_retried(fake_store, blobs, receipt, form, draft):
    fake_store.lookup_failures.extend(
        [PersistenceFailure("corrupt"), PersistenceFailure("corrupt")]
    )
    coordinator = _coordinator(fake_store, blobs)

    with pytest.raises(PersistenceFailure):
        asyncio.run(coordinator.submit(draft, receipt, form.as_mapping()))

    assert len(fake_store.lookup_failures) == 1
    assert blobs.list_blobs() == []
