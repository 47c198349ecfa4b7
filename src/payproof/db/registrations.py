"""Registration document store backed by SQLite."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from payproof.errors import (
    DuplicateIdentityConflict,
    PersistenceFailure,
    RegistrationIdTaken,
    ShortCodeTaken,
)
from payproof.models.registration import OrphanedBlob, RegistrationRecord, normalize_email

from .models import OrphanedBlobORM, RegistrationORM
from .repository import session_scope

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(action: str) -> Generator[None, None, None]:
    try:
        yield
    except OperationalError as exc:
        logger.warning("Transient database failure while %s: %s", action, exc)
        raise PersistenceFailure(f"Database unavailable while {action}.", transient=True) from exc
    except SQLAlchemyError as exc:
        logger.error("Database failure while %s: %s", action, exc)
        raise PersistenceFailure(f"Database failure while {action}.") from exc


class SqlRegistrationStore:
    """Store registrations as JSON documents with unique email and short code.

    The unique constraints are the authority on duplicates; callers may
    pre-check with :meth:`find_by_contact_identity` but must still handle
    :class:`DuplicateIdentityConflict` from :meth:`create`.
    """

    def find_by_contact_identity(self, email: str) -> Optional[RegistrationRecord]:
        normalized = normalize_email(email)
        with _translate_errors("looking up a registration"), session_scope() as session:
            row = session.execute(
                select(RegistrationORM).where(RegistrationORM.primary_email == normalized)
            ).scalar_one_or_none()
            return RegistrationRecord.from_document(row.document) if row else None

    def get(self, registration_id: str) -> Optional[RegistrationRecord]:
        with _translate_errors("loading a registration"), session_scope() as session:
            row = session.get(RegistrationORM, registration_id)
            return RegistrationRecord.from_document(row.document) if row else None

    def short_code_exists(self, short_code: str) -> bool:
        with _translate_errors("checking a short code"), session_scope() as session:
            found = session.execute(
                select(RegistrationORM.registration_id).where(
                    RegistrationORM.short_code == short_code
                )
            ).first()
            return found is not None

    def create(self, record: RegistrationRecord) -> RegistrationRecord:
        """Insert ``record`` in a single write."""

        email = normalize_email(record.primary_attendee.email)
        try:
            with session_scope() as session:
                session.add(
                    RegistrationORM(
                        registration_id=record.registration_id,
                        short_code=record.short_code,
                        primary_email=email,
                        document=record.to_document(),
                        created_at=record.created_at,
                    )
                )
                session.flush()
        except IntegrityError as exc:
            message = str(exc.orig).lower()
            if "primary_email" in message:
                existing = self.find_by_contact_identity(email)
                raise DuplicateIdentityConflict(
                    existing.registration_id if existing else None
                ) from exc
            if "short_code" in message:
                raise ShortCodeTaken(record.short_code) from exc
            if "registration_id" in message:
                raise RegistrationIdTaken(record.registration_id) from exc
            raise PersistenceFailure(f"Could not store registration: {exc.orig}") from exc
        except OperationalError as exc:
            raise PersistenceFailure(
                "Database unavailable while storing a registration.", transient=True
            ) from exc
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Database failure while storing a registration.") from exc

        logger.info(
            "Stored registration",
            extra={"registration_id": record.registration_id},
        )
        return record

    def record_orphaned_blob(
        self, key: str, registration_id: Optional[str], reason: str
    ) -> None:
        with _translate_errors("recording an orphaned blob"), session_scope() as session:
            row = session.get(OrphanedBlobORM, key)
            if row is None:
                session.add(
                    OrphanedBlobORM(
                        key=key,
                        registration_id=registration_id,
                        reason=reason,
                        recorded_at=datetime.now(timezone.utc),
                    )
                )
            else:
                row.reason = reason
                row.resolved_at = None

    def list_orphaned_blobs(self, include_resolved: bool = False) -> List[OrphanedBlob]:
        with _translate_errors("listing orphaned blobs"), session_scope() as session:
            query = select(OrphanedBlobORM).order_by(OrphanedBlobORM.recorded_at)
            if not include_resolved:
                query = query.where(OrphanedBlobORM.resolved_at.is_(None))
            rows = session.execute(query).scalars().all()
            return [OrphanedBlob.model_validate(row) for row in rows]

    def resolve_orphaned_blob(self, key: str) -> bool:
        with _translate_errors("resolving an orphaned blob"), session_scope() as session:
            row = session.get(OrphanedBlobORM, key)
            if row is None or row.resolved_at is not None:
                return False
            row.resolved_at = datetime.now(timezone.utc)
            return True


__all__ = ["SqlRegistrationStore"]
