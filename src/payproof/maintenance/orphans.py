"""Reconciliation sweep for payment proofs that never got a registration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from payproof import metrics
from payproof.models.registration import OrphanedBlob, RegistrationRecord
from payproof.storage.blobs import PROOF_PREFIX, StoredBlob, registration_id_from_key

logger = logging.getLogger(__name__)


class SweepStore(Protocol):
    def get(self, registration_id: str) -> Optional[RegistrationRecord]:
        ...

    def list_orphaned_blobs(self, include_resolved: bool = False) -> List[OrphanedBlob]:
        ...

    def resolve_orphaned_blob(self, key: str) -> bool:
        ...


class SweepBlobs(Protocol):
    def list_blobs(self, prefix: str = "") -> List[StoredBlob]:
        ...

    def delete(self, key: str) -> bool:
        ...


@dataclass
class SweepReport:
    scanned: int = 0
    deleted: List[str] = field(default_factory=list)
    kept_recent: List[str] = field(default_factory=list)
    referenced: int = 0
    ledger_resolved: List[str] = field(default_factory=list)
    dry_run: bool = False


def _is_referenced(store: SweepStore, key: str) -> bool:
    registration_id = registration_id_from_key(key)
    if registration_id is None:
        return False
    record = store.get(registration_id)
    return record is not None and record.payment.proof_key == key


def sweep_orphaned_blobs(
    store: SweepStore,
    blobs: SweepBlobs,
    *,
    grace: timedelta,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> SweepReport:
    """Delete proofs older than ``grace`` that no registration references.

    Newer proofs are left alone because their submission may still be in
    flight. Ledger entries are resolved once their blob is gone.
    """

    now = now or datetime.now(timezone.utc)
    cutoff = now - grace
    report = SweepReport(dry_run=dry_run)
    ledger = {entry.key: entry for entry in store.list_orphaned_blobs()}
    present = set()

    for blob in blobs.list_blobs(PROOF_PREFIX):
        report.scanned += 1
        present.add(blob.key)
        if _is_referenced(store, blob.key):
            report.referenced += 1
            if blob.key in ledger and not dry_run and store.resolve_orphaned_blob(blob.key):
                report.ledger_resolved.append(blob.key)
            continue
        if blob.modified_at > cutoff:
            report.kept_recent.append(blob.key)
            continue

        report.deleted.append(blob.key)
        if dry_run:
            logger.info("Would delete orphaned proof %s", blob.key)
            continue
        blobs.delete(blob.key)
        metrics.ORPHANED_BLOBS.labels(event="swept").inc()
        logger.info("Deleted orphaned proof %s", blob.key)
        if blob.key in ledger and store.resolve_orphaned_blob(blob.key):
            report.ledger_resolved.append(blob.key)

    if not dry_run:
        for key in ledger:
            if key not in present and store.resolve_orphaned_blob(key):
                report.ledger_resolved.append(key)

    logger.info(
        "Orphan sweep scanned=%s deleted=%s kept_recent=%s dry_run=%s",
        report.scanned,
        len(report.deleted),
        len(report.kept_recent),
        dry_run,
    )
    return report


__all__ = ["SweepReport", "sweep_orphaned_blobs"]
