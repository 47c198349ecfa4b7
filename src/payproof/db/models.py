"""SQLAlchemy models representing Payproof persistence tables."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base class for Payproof ORM models."""


class RegistrationORM(Base):
    """Registration document plus the columns that enforce uniqueness."""

    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint("primary_email", name="uq_registrations_primary_email"),
        UniqueConstraint("short_code", name="uq_registrations_short_code"),
    )

    registration_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    short_code: Mapped[str] = mapped_column(String(16), nullable=False)
    primary_email: Mapped[str] = mapped_column(String(320), nullable=False)
    document: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class OrphanedBlobORM(Base):
    """Ledger of uploaded proofs that never got a registration record."""

    __tablename__ = "orphaned_blobs"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    registration_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
