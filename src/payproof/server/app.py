"""ASGI application for Payproof."""
# mypy: ignore-errors

from __future__ import annotations

import json
import logging
from datetime import timedelta
from time import perf_counter
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from payproof import __version__, metrics
from payproof.config import Settings, get_settings
from payproof.db import SqlRegistrationStore
from payproof.errors import (
    DuplicateIdentityConflict,
    ExtractionUnavailable,
    PersistenceFailure,
    UploadFailure,
    ValidationFailure,
)
from payproof.logging_utils import configure_logging as configure_app_logging
from payproof.maintenance import sweep_orphaned_blobs
from payproof.models.payment import PaymentFieldState
from payproof.models.receipt import FieldCandidate, RawExtraction, ReceiptImage
from payproof.models.registration import (
    Attendee,
    Church,
    PricingTier,
    PrimaryAttendee,
    RegistrationDraft,
)
from payproof.ocr.extractor import ReceiptTextExtractor
from payproof.ocr.parser import CandidateParser
from payproof.ocr.reconciler import (
    UNAVAILABLE_SOURCE,
    apply_to_form,
    reset_fields,
    select_winners,
)
from payproof.pricing import active_tiers
from payproof.registration import RegistrationCoordinator
from payproof.server import deps
from payproof.storage import LocalBlobStore

logger = logging.getLogger(__name__)


class ExtractionResponse(BaseModel):
    """Extraction outcome returned to the registration form."""

    status: str
    manual_entry: bool
    source: str
    confidence: Optional[float] = None
    raw_text: str
    fields: List[PaymentFieldState]
    candidates: List[FieldCandidate]

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmissionPayload(BaseModel):
    """JSON document posted in the ``payload`` form field of a submission."""

    church: Church
    primary_attendee: PrimaryAttendee
    additional_attendees: List[Attendee] = Field(default_factory=list)
    payment_fields: List[PaymentFieldState] = Field(default_factory=list)
    extraction: Optional[RawExtraction] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def draft(self) -> RegistrationDraft:
        return RegistrationDraft(
            church=self.church,
            primary_attendee=self.primary_attendee,
            additional_attendees=self.additional_attendees,
        )


def _field_path(loc: tuple) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "payload"


def _field_errors(errors: Sequence[Any], prefixes: Sequence[str] = ()) -> Dict[str, str]:
    """Map pydantic error entries to ``{"a.b[0].c": message}``."""

    fields: Dict[str, str] = {}
    for error in errors:
        loc = tuple(error.get("loc", ()))
        if loc and loc[0] in prefixes:
            loc = loc[1:]
        fields.setdefault(_field_path(loc), error.get("msg", "Invalid value"))
    return fields


def _configure_logging(settings: Settings) -> None:
    secrets = [settings.ocr_remote_api_key or ""]
    configure_app_logging(settings.log_level, settings.log_format, secrets)


def _log_extra(request: Request) -> dict[str, Any]:
    request_id = getattr(request.state, "request_id", None)
    return {"extra": {"request_id": request_id}} if request_id else {}


def _run_orphan_sweep(settings: Settings) -> None:
    report = sweep_orphaned_blobs(
        SqlRegistrationStore(),
        LocalBlobStore(settings.blob_root, public_base_url=settings.blob_public_base_url),
        grace=timedelta(hours=settings.orphan_grace_hours),
    )
    logger.info("Scheduled orphan sweep removed %s proof(s)", len(report.deleted))


def create_app() -> FastAPI:
    """Create and configure a FastAPI application instance."""

    settings = get_settings()
    _configure_logging(settings)

    application = FastAPI(title="Payproof Registration Intake", version=__version__)

    sweep_scheduler: AsyncIOScheduler | None = None
    if settings.orphan_sweep_enabled:
        sweep_scheduler = AsyncIOScheduler()
        sweep_scheduler.add_job(
            _run_orphan_sweep,
            "interval",
            args=[settings],
            minutes=settings.orphan_sweep_interval_minutes,
            max_instances=1,
            coalesce=True,
        )

        @application.on_event("startup")
        async def start_orphan_sweep() -> None:
            assert sweep_scheduler is not None
            sweep_scheduler.start()

        @application.on_event("shutdown")
        async def stop_orphan_sweep() -> None:
            assert sweep_scheduler is not None
            sweep_scheduler.shutdown(wait=False)

    logger.debug("Application created with log level %s", settings.log_level)

    access_logger = logging.getLogger("payproof.access")

    def _observe_request(request: Request, status_code: int, elapsed: float) -> None:
        method, path = request.method, request.url.path
        metrics.REQUEST_COUNT.labels(method=method, path=path, status=str(status_code)).inc()
        metrics.REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)
        if settings.log_requests:
            access_logger.info(
                "HTTP %s %s status=%s duration_ms=%.2f",
                method,
                path,
                status_code,
                elapsed * 1000,
                **_log_extra(request),
            )

    @application.middleware("http")
    async def trace_requests(request: Request, call_next):
        """Tag each request with an ID and record its outcome and latency."""

        request.state.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        started = perf_counter()
        status_code = 500
        try:
            response: Response = await call_next(request)
            status_code = response.status_code
        except Exception:
            access_logger.exception(
                "Unhandled error on %s %s", request.method, request.url.path, **_log_extra(request)
            )
            raise
        finally:
            _observe_request(request, status_code, perf_counter() - started)
        response.headers.setdefault("X-Request-ID", request.state.request_id)
        return response

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc.errors(), prefixes=("body", "query", "path"))
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            errors,
            **_log_extra(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "code": ValidationFailure.code,
                "detail": "Request is invalid.",
                "errors": errors,
            },
        )

    @application.exception_handler(ValidationFailure)
    async def validation_failure_handler(request: Request, exc: ValidationFailure):
        logger.info(
            "Rejected %s %s: %s",
            request.method,
            request.url.path,
            exc,
            **_log_extra(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"code": exc.code, "detail": str(exc), "errors": exc.errors},
        )

    @application.exception_handler(UploadFailure)
    async def upload_failure_handler(request: Request, exc: UploadFailure):
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "code": exc.code,
                "detail": str(exc),
                "progress": exc.progress,
                "timed_out": exc.timed_out,
            },
        )

    @application.exception_handler(DuplicateIdentityConflict)
    async def duplicate_handler(request: Request, exc: DuplicateIdentityConflict):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "code": exc.code,
                "detail": str(exc),
                "existing_registration_id": exc.existing_registration_id,
            },
        )

    @application.exception_handler(PersistenceFailure)
    async def persistence_failure_handler(request: Request, exc: PersistenceFailure):
        logger.error(
            "Persistence failure on %s %s: %s",
            request.method,
            request.url.path,
            exc,
            **_log_extra(request),
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"code": exc.code, "detail": str(exc), "transient": exc.transient},
        )

    @application.get("/health", summary="Liveness probe")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @application.get(
        "/pricing-tiers",
        summary="List pricing tiers open for registration",
    )
    def pricing_tiers_list(
        tiers: List[PricingTier] = Depends(deps.get_pricing_tiers),
    ) -> list[dict[str, Any]]:
        return [tier.model_dump(mode="json", by_alias=True) for tier in active_tiers(tiers)]

    @application.post(
        "/payment-proofs/extract",
        summary="Read payment details from a proof image",
    )
    async def payment_proof_extract(
        file: UploadFile = File(...),
        extractor: ReceiptTextExtractor = Depends(deps.get_extractor),
        parser: CandidateParser = Depends(deps.get_candidate_parser),
        settings: Settings = Depends(get_settings),
    ) -> dict[str, Any]:
        content = await file.read()
        image = ReceiptImage.from_bytes(content, file.content_type, file.filename)
        try:
            raw = await extractor.extract(image)
        except ExtractionUnavailable as exc:
            logger.warning("Extraction unavailable, manual entry required: %s", exc)
            raw = RawExtraction(raw_text="", source=UNAVAILABLE_SOURCE)

        result = select_winners(
            parser.parse(raw), raw, min_confidence=settings.min_candidate_confidence
        )
        fields = apply_to_form(result, reset_fields())
        response = ExtractionResponse(
            status=result.status,
            manual_entry=result.manual_entry,
            source=raw.source,
            confidence=raw.confidence,
            raw_text=raw.raw_text,
            fields=fields,
            candidates=result.candidates,
        )
        return response.model_dump(mode="json", by_alias=True)

    @application.post(
        "/registrations",
        status_code=status.HTTP_201_CREATED,
        summary="Submit a registration with its payment proof",
    )
    async def registrations_create(
        request: Request,
        payload: str = Form(...),
        file: Optional[UploadFile] = File(default=None),
        coordinator: RegistrationCoordinator = Depends(deps.get_coordinator),
    ) -> dict[str, Any]:
        try:
            submission = SubmissionPayload.model_validate(json.loads(payload))
        except json.JSONDecodeError as exc:
            raise ValidationFailure(
                "Registration payload is not valid JSON.", {"payload": exc.msg}
            ) from exc
        except ValidationError as exc:
            raise ValidationFailure(
                "Registration is incomplete.", _field_errors(exc.errors())
            ) from exc

        receipt: Optional[ReceiptImage] = None
        if file is not None and file.filename:
            content = await file.read()
            receipt = ReceiptImage.from_bytes(content, file.content_type, file.filename)

        def _on_progress(fraction: float) -> None:
            logger.debug("Proof upload %.0f%%", fraction * 100, **_log_extra(request))

        record = await coordinator.submit(
            submission.draft(),
            receipt,
            {state.kind: state for state in submission.payment_fields},
            _on_progress,
            extraction=submission.extraction,
        )
        return record.model_dump(mode="json", by_alias=True)

    @application.get("/metrics", include_in_schema=False)
    def metrics_endpoint() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    return application


app = create_app()
