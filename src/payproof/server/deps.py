"""Dependency definitions for the Payproof API server."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from fastapi import Depends

from payproof.config import Settings, get_settings
from payproof.db import SqlRegistrationStore
from payproof.models.registration import PricingTier
from payproof.ocr.extractor import ReceiptTextExtractor
from payproof.ocr.parser import CandidateParser
from payproof.pricing import load_pricing_tiers
from payproof.registration import RegistrationCoordinator
from payproof.storage import LocalBlobStore


def get_registration_store() -> SqlRegistrationStore:
    return SqlRegistrationStore()


def get_blob_store(settings: Settings = Depends(get_settings)) -> LocalBlobStore:
    return LocalBlobStore(
        settings.blob_root, public_base_url=settings.blob_public_base_url
    )


@lru_cache
def _cached_tiers(path: Optional[Path]) -> tuple[PricingTier, ...]:
    return tuple(load_pricing_tiers(path))


def get_pricing_tiers(settings: Settings = Depends(get_settings)) -> List[PricingTier]:
    """Return the configured pricing tiers, read once per tiers file."""

    return list(_cached_tiers(settings.pricing_tiers_path))


def get_extractor(settings: Settings = Depends(get_settings)) -> ReceiptTextExtractor:
    return ReceiptTextExtractor.from_settings(settings)


def get_candidate_parser(settings: Settings = Depends(get_settings)) -> CandidateParser:
    return CandidateParser.from_settings(settings)


def get_coordinator(
    settings: Settings = Depends(get_settings),
    store: SqlRegistrationStore = Depends(get_registration_store),
    blobs: LocalBlobStore = Depends(get_blob_store),
    tiers: List[PricingTier] = Depends(get_pricing_tiers),
) -> RegistrationCoordinator:
    """Build a coordinator over the configured store, blob root and tiers."""

    return RegistrationCoordinator(
        store,
        blobs,
        tiers,
        conference_year=settings.conference_year,
        upload_timeout=settings.upload_timeout_seconds,
        identifier_attempts=settings.identifier_attempts,
        max_receipt_bytes=settings.max_receipt_bytes,
    )
