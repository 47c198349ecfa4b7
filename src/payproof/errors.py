"""Error taxonomy shared by the intake pipeline and the submission coordinator.

Callers branch on the exception class (or its ``code``), never on message text.
"""

from __future__ import annotations

from typing import Dict, Optional


class PayproofError(Exception):
    """Base class for all Payproof failures."""

    code = "payproof_error"


class ValidationFailure(PayproofError):
    """Caller-correctable input problem, e.g. a missing attendee field."""

    code = "validation_failure"

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.errors: Dict[str, str] = dict(errors or {})


class ExtractionUnavailable(PayproofError):
    """The OCR capability could not be reached or did not answer in time."""

    code = "extraction_unavailable"

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class UploadFailure(PayproofError):
    """Uploading the payment proof failed; the submission wrote nothing."""

    code = "upload_failure"

    def __init__(self, message: str, *, progress: float = 0.0, timed_out: bool = False) -> None:
        super().__init__(message)
        self.progress = progress
        self.timed_out = timed_out


class DuplicateIdentityConflict(PayproofError):
    """A registration already exists for the primary contact email."""

    code = "duplicate_identity"

    def __init__(self, existing_registration_id: Optional[str]) -> None:
        super().__init__(
            f"A registration already exists for this email ({existing_registration_id or 'unknown'})."
        )
        self.existing_registration_id = existing_registration_id


class ShortCodeTaken(PayproofError):
    """The store rejected a record because its short code is already in use."""

    code = "short_code_taken"

    def __init__(self, short_code: str) -> None:
        super().__init__(f"Short code {short_code} is already in use.")
        self.short_code = short_code


class RegistrationIdTaken(PayproofError):
    """The store already holds a record under this registration id."""

    code = "registration_id_taken"

    def __init__(self, registration_id: str) -> None:
        super().__init__(f"Registration id {registration_id} is already in use.")
        self.registration_id = registration_id


class PersistenceFailure(PayproofError):
    """The document store could not be read or written."""

    code = "persistence_failure"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        orphaned_blob_key: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.orphaned_blob_key = orphaned_blob_key


__all__ = [
    "PayproofError",
    "ValidationFailure",
    "ExtractionUnavailable",
    "UploadFailure",
    "DuplicateIdentityConflict",
    "ShortCodeTaken",
    "RegistrationIdTaken",
    "PersistenceFailure",
]
