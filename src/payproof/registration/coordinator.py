"""Registration submission: duplicate check, identifiers, proof upload, persist."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import threading
import time
from datetime import datetime, timezone
from typing import (
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
    Union,
)

from payproof import metrics, pricing
from payproof.errors import (
    DuplicateIdentityConflict,
    PersistenceFailure,
    RegistrationIdTaken,
    ShortCodeTaken,
    UploadFailure,
    ValidationFailure,
)
from payproof.models.payment import PaymentFieldState, Provenance
from payproof.models.receipt import FieldKind, RawExtraction, ReceiptImage
from payproof.models.registration import (
    PaymentDetails,
    PricingTier,
    RegistrationDraft,
    RegistrationRecord,
)
from payproof.ocr.extractor import DEFAULT_MAX_RECEIPT_BYTES, validate_receipt_image
from payproof.ocr.parser import parse_amount
from payproof.registration.identifiers import IdentifierIssuer, short_code_suffix
from payproof.storage.blobs import ProgressCallback, proof_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

PaymentFields = Union[Sequence[PaymentFieldState], Mapping[FieldKind, PaymentFieldState]]


class RegistrationStore(Protocol):
    def find_by_contact_identity(self, email: str) -> Optional[RegistrationRecord]:
        ...

    def short_code_exists(self, short_code: str) -> bool:
        ...

    def create(self, record: RegistrationRecord) -> RegistrationRecord:
        ...

    def record_orphaned_blob(
        self, key: str, registration_id: Optional[str], reason: str
    ) -> None:
        ...


class BlobStore(Protocol):
    def upload(
        self,
        data: bytes,
        key: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        ...


class _ProgressReporter:
    """Forward upload progress, clamped to [0, 1] and never moving backwards.

    Updates queued by the upload thread are dropped once ``close`` is called.
    """

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self._callback = callback
        self._closed = False
        self.value = 0.0

    def report(self, fraction: float) -> None:
        if self._closed:
            return
        fraction = max(0.0, min(1.0, fraction))
        if fraction <= self.value:
            return
        self.value = fraction
        if self._callback is not None:
            self._callback(fraction)

    def close(self) -> float:
        self._closed = True
        return self.value


def _field_map(payment_fields: Optional[PaymentFields]) -> Dict[FieldKind, PaymentFieldState]:
    states: Dict[FieldKind, PaymentFieldState] = {kind: PaymentFieldState(kind=kind) for kind in FieldKind}
    if payment_fields is None:
        return states
    items: Iterable[PaymentFieldState]
    if isinstance(payment_fields, Mapping):
        items = payment_fields.values()
    else:
        items = payment_fields
    for state in items:
        states[state.kind] = state
    return states


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _proof_filename(receipt: ReceiptImage) -> str:
    if receipt.filename:
        return receipt.filename
    extension = mimetypes.guess_extension(receipt.content_type) or ".img"
    return f"proof{extension}"


class RegistrationCoordinator:
    """Submit a registration so that each contact email yields one record.

    The store lookup before upload is advisory; the store's unique constraint
    decides races. Proofs uploaded for submissions that then fail to persist
    are written to the orphan ledger for the sweep job.
    """

    def __init__(
        self,
        store: RegistrationStore,
        blobs: BlobStore,
        tiers: Sequence[PricingTier],
        *,
        conference_year: int = 2026,
        upload_timeout: float = 60.0,
        identifier_attempts: int = 5,
        max_receipt_bytes: int = DEFAULT_MAX_RECEIPT_BYTES,
        retry_attempts: int = 3,
        retry_initial_delay: float = 0.2,
        retry_backoff: float = 2.0,
        issuer: Optional[IdentifierIssuer] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._tiers: List[PricingTier] = list(tiers)
        self._upload_timeout = upload_timeout
        self._identifier_attempts = max(1, identifier_attempts)
        self._max_receipt_bytes = max_receipt_bytes
        self._retry_attempts = max(1, retry_attempts)
        self._retry_initial_delay = retry_initial_delay
        self._retry_backoff = retry_backoff
        self._issuer = issuer or IdentifierIssuer(
            year=conference_year,
            is_taken=store.short_code_exists,
            attempts=identifier_attempts,
        )
        self._clock = clock

    @property
    def tiers(self) -> List[PricingTier]:
        return list(self._tiers)

    async def submit(
        self,
        draft: RegistrationDraft,
        receipt: Optional[ReceiptImage] = None,
        payment_fields: Optional[PaymentFields] = None,
        on_progress: Optional[ProgressCallback] = None,
        *,
        extraction: Optional[RawExtraction] = None,
    ) -> RegistrationRecord:
        """Persist ``draft`` and return the stored record.

        Raises ``ValidationFailure``, ``DuplicateIdentityConflict``,
        ``UploadFailure`` or ``PersistenceFailure``. Nothing is written when
        validation, the duplicate check or the upload fails.
        """

        try:
            return await self._submit(draft, receipt, payment_fields, on_progress, extraction)
        except ValidationFailure:
            metrics.SUBMISSIONS.labels(outcome="invalid").inc()
            raise
        except DuplicateIdentityConflict:
            metrics.SUBMISSIONS.labels(outcome="duplicate").inc()
            raise
        except UploadFailure:
            metrics.SUBMISSIONS.labels(outcome="upload_failed").inc()
            raise
        except PersistenceFailure:
            metrics.SUBMISSIONS.labels(outcome="persistence_failed").inc()
            raise

    async def _submit(
        self,
        draft: RegistrationDraft,
        receipt: Optional[ReceiptImage],
        payment_fields: Optional[PaymentFields],
        on_progress: Optional[ProgressCallback],
        extraction: Optional[RawExtraction],
    ) -> RegistrationRecord:
        fields = _field_map(payment_fields)
        attendees = draft.attendees
        pricing.require_known_tiers(attendees, self._tiers)
        total_amount = pricing.total(attendees, self._tiers)
        payment_required = total_amount > 0

        amount = None
        amount_text = _clean(fields[FieldKind.AMOUNT].value)
        if amount_text is not None:
            amount = parse_amount(amount_text)
        if payment_required:
            if receipt is None:
                raise ValidationFailure(
                    "A payment proof is required.", {"file": "Upload a payment proof"}
                )
            validate_receipt_image(receipt, self._max_receipt_bytes)
            if amount is None:
                raise ValidationFailure(
                    "The amount paid is required.", {"amount": "Enter the amount paid"}
                )

        email = draft.primary_attendee.email
        existing = await self._with_retry(
            lambda: asyncio.to_thread(self._store.find_by_contact_identity, email),
            "duplicate check",
        )
        if existing is not None:
            logger.info(
                "Registration already exists for contact",
                extra={"registration_id": existing.registration_id},
            )
            raise DuplicateIdentityConflict(existing.registration_id)

        registration_id = self._issuer.registration_id()
        short_code = await self._with_retry(
            lambda: asyncio.to_thread(self._issuer.short_code), "short code issue"
        )

        proof_url: Optional[str] = None
        key: Optional[str] = None
        if payment_required and receipt is not None:
            key = proof_key(registration_id, _proof_filename(receipt))
            proof_url = await self._upload(receipt.content, key, registration_id, on_progress)

        record = RegistrationRecord(
            registration_id=registration_id,
            short_code=short_code,
            short_code_suffix=short_code_suffix(short_code),
            primary_attendee=draft.primary_attendee,
            additional_attendees=list(draft.additional_attendees),
            church=draft.church,
            payment=PaymentDetails(
                proof_url=proof_url,
                proof_key=key,
                amount=amount,
                date=_clean(fields[FieldKind.DATE].value),
                time=_clean(fields[FieldKind.TIME].value),
                reference_number=_clean(fields[FieldKind.REFERENCE_NUMBER].value),
                bank=_clean(fields[FieldKind.BANK].value),
                provenance={kind: state.provenance for kind, state in fields.items()},
                suggestions={
                    kind: state.suggested
                    for kind, state in fields.items()
                    if state.provenance is not Provenance.UNSET
                },
                ocr_source=extraction.source if extraction else None,
                ocr_raw_text=extraction.raw_text if extraction else None,
            ),
            total_amount=total_amount,
            pricing_tier=draft.primary_attendee.category,
            created_at=self._clock(),
        )
        return await self._persist(record, receipt)

    async def _persist(
        self, record: RegistrationRecord, receipt: Optional[ReceiptImage]
    ) -> RegistrationRecord:
        key = record.payment.proof_key
        try:
            for attempt in range(1, self._identifier_attempts + 1):
                try:
                    stored = await asyncio.to_thread(self._store.create, record)
                except ShortCodeTaken:
                    logger.info(
                        "Short code taken at persist time (attempt %s), issuing another",
                        attempt,
                        extra={"registration_id": record.registration_id},
                    )
                    record = await self._with_new_short_code(record)
                    continue
                except RegistrationIdTaken:
                    logger.warning(
                        "Registration id taken at persist time (attempt %s), issuing another",
                        attempt,
                        extra={"registration_id": record.registration_id},
                    )
                    record = await self._with_new_registration_id(record, receipt)
                    key = record.payment.proof_key
                    continue

                metrics.SUBMISSIONS.labels(outcome="created").inc()
                logger.info(
                    "Registration submitted total=%s",
                    stored.total_amount,
                    extra={"registration_id": stored.registration_id},
                )
                return stored
        except DuplicateIdentityConflict:
            if key is not None:
                await self._record_orphan(key, record.registration_id, "duplicate registration")
            raise
        except PersistenceFailure as exc:
            if key is None or exc.orphaned_blob_key is not None:
                raise
            await self._record_orphan(key, record.registration_id, f"persist failed: {exc}")
            raise PersistenceFailure(
                str(exc), transient=exc.transient, orphaned_blob_key=key
            ) from exc

        if key is not None:
            await self._record_orphan(key, record.registration_id, "no free identifiers")
        raise PersistenceFailure(
            "Could not store the registration with unique identifiers.",
            orphaned_blob_key=key,
        )

    async def _with_new_short_code(self, record: RegistrationRecord) -> RegistrationRecord:
        code = await self._with_retry(
            lambda: asyncio.to_thread(self._issuer.short_code), "short code issue"
        )
        return record.model_copy(
            update={"short_code": code, "short_code_suffix": short_code_suffix(code)}
        )

    async def _with_new_registration_id(
        self, record: RegistrationRecord, receipt: Optional[ReceiptImage]
    ) -> RegistrationRecord:
        """Move ``record`` to a fresh id, re-uploading its proof under the new key."""

        registration_id = self._issuer.registration_id()
        payment = record.payment
        old_key = payment.proof_key
        if old_key is not None and receipt is not None:
            await self._record_orphan(old_key, record.registration_id, "registration id collision")
            key = proof_key(registration_id, _proof_filename(receipt))
            # Progress already reached 1.0 for the first upload.
            url = await self._upload(receipt.content, key, registration_id, None)
            payment = payment.model_copy(update={"proof_key": key, "proof_url": url})
        return record.model_copy(update={"registration_id": registration_id, "payment": payment})

    async def _upload(
        self,
        data: bytes,
        key: str,
        registration_id: str,
        on_progress: Optional[ProgressCallback],
    ) -> str:
        loop = asyncio.get_running_loop()
        reporter = _ProgressReporter(on_progress)
        cancel = threading.Event()

        def _from_worker(fraction: float) -> None:
            loop.call_soon_threadsafe(reporter.report, fraction)

        started = time.perf_counter()
        try:
            url = await asyncio.wait_for(
                asyncio.to_thread(self._blobs.upload, data, key, _from_worker, cancel),
                timeout=self._upload_timeout,
            )
        except asyncio.TimeoutError as exc:
            cancel.set()
            progress = reporter.close()
            logger.warning(
                "Proof upload timed out after %.1fs at %.0f%%",
                self._upload_timeout,
                progress * 100,
                extra={"registration_id": registration_id},
            )
            # The worker may still finish the rename before it sees the cancel.
            await self._record_orphan(key, registration_id, "upload timed out")
            raise UploadFailure(
                "Uploading the payment proof timed out.",
                progress=progress,
                timed_out=True,
            ) from exc
        except Exception as exc:
            progress = reporter.close()
            logger.warning(
                "Proof upload failed: %s",
                exc,
                extra={"registration_id": registration_id},
            )
            raise UploadFailure(
                "Uploading the payment proof failed.", progress=progress
            ) from exc
        finally:
            metrics.UPLOAD_LATENCY.observe(time.perf_counter() - started)

        reporter.report(1.0)
        return url

    async def _record_orphan(self, key: str, registration_id: str, reason: str) -> None:
        metrics.ORPHANED_BLOBS.labels(event="recorded").inc()
        logger.error(
            "Payment proof %s has no registration record: %s",
            key,
            reason,
            extra={"registration_id": registration_id},
        )
        try:
            await asyncio.to_thread(self._store.record_orphaned_blob, key, registration_id, reason)
        except PersistenceFailure as exc:
            # The sweep also finds proofs without records by listing blobs.
            logger.error("Could not add %s to the orphan ledger: %s", key, exc)

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], action: str) -> T:
        delay = self._retry_initial_delay
        attempt = 1
        while True:
            try:
                return await operation()
            except PersistenceFailure as exc:
                if not exc.transient or attempt >= self._retry_attempts:
                    raise
                logger.warning(
                    "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                    action,
                    attempt,
                    self._retry_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                delay *= self._retry_backoff
                attempt += 1


__all__ = ["BlobStore", "RegistrationCoordinator", "RegistrationStore"]
