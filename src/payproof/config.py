"""Settings for Payproof, read from PAYPROOF_* environment variables or .env files."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ENV_FILE_CANDIDATES = (Path(".env"), Path(".env.local"))


class Settings(BaseModel):
    """Global application settings loaded from environment variables or .env files."""

    database_path: Path = Field(
        default=Path("./data/payproof.db"),
        description="SQLite database location.",
    )
    blob_root: Path = Field(
        default=Path("./data/blobs"),
        description="Directory used to store uploaded payment proofs.",
    )
    blob_public_base_url: Optional[str] = Field(
        default=None,
        description="Public URL prefix for stored proofs (file:// URLs when unset).",
    )
    log_level: str = Field(default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        default="plain",
        description="Logging format (plain/json).",
    )
    log_requests: bool = Field(
        default=True,
        description="Emit request access logs when true.",
    )
    ocr_default_lang: str = Field(
        default="eng",
        description="Default Tesseract language code for OCR processing.",
    )
    ocr_timeout_seconds: float = Field(
        default=20.0,
        description="Upper bound for a single receipt recognition, fallback included.",
    )
    ocr_psm_modes: tuple[int, ...] = Field(
        default=(6, 11),
        description="Tesseract page segmentation modes tried per receipt.",
    )
    ocr_remote_url: Optional[str] = Field(
        default=None,
        description="Remote OCR endpoint used as a fallback for low-confidence recognitions.",
    )
    ocr_remote_api_key: Optional[str] = Field(
        default=None,
        description="Bearer token sent to the remote OCR endpoint.",
    )
    ocr_fallback_threshold: float = Field(
        default=0.60,
        description="Primary OCR confidence below which the remote fallback is tried.",
    )
    max_receipt_bytes: int = Field(
        default=5 * 1024 * 1024,
        description="Largest accepted payment proof upload in bytes.",
    )
    min_candidate_confidence: float = Field(
        default=0.5,
        description="Minimum confidence for an extracted candidate to pre-fill a field.",
    )
    amount_min: float = Field(default=1.0, description="Smallest plausible payment amount.")
    amount_max: float = Field(
        default=1_000_000.0,
        description="Largest plausible payment amount.",
    )
    upload_timeout_seconds: float = Field(
        default=60.0,
        description="Upper bound for uploading a payment proof.",
    )
    conference_year: int = Field(
        default=2026,
        description="Year embedded in issued registration identifiers.",
    )
    identifier_attempts: int = Field(
        default=5,
        description="Attempts allowed for issuing collision-free identifiers.",
    )
    pricing_tiers_path: Optional[Path] = Field(
        default=None,
        description="JSON file describing pricing tiers (built-in tiers when unset).",
    )
    orphan_grace_hours: float = Field(
        default=24.0,
        description="Age after which an unclaimed proof blob may be swept.",
    )
    orphan_sweep_enabled: bool = Field(
        default=False,
        description="Run the orphaned-blob sweep on a schedule inside the server when true.",
    )
    orphan_sweep_interval_minutes: float = Field(
        default=60.0,
        description="Minutes between scheduled orphaned-blob sweeps.",
    )

    model_config = ConfigDict(frozen=True)


def _coerce_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_tuple(value: str) -> tuple[int, ...]:
    return tuple(int(entry) for entry in value.split(",") if entry.strip())


# Environment variable -> (settings field, converter).
ENV_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "PAYPROOF_DATABASE_PATH": ("database_path", Path),
    "PAYPROOF_BLOB_ROOT": ("blob_root", Path),
    "PAYPROOF_BLOB_PUBLIC_BASE_URL": ("blob_public_base_url", str),
    "PAYPROOF_LOG_LEVEL": ("log_level", str),
    "PAYPROOF_LOG_FORMAT": ("log_format", str),
    "PAYPROOF_LOG_REQUESTS": ("log_requests", _coerce_bool),
    "PAYPROOF_OCR_LANG": ("ocr_default_lang", str),
    "PAYPROOF_OCR_TIMEOUT_SECONDS": ("ocr_timeout_seconds", float),
    "PAYPROOF_OCR_PSM_MODES": ("ocr_psm_modes", _int_tuple),
    "PAYPROOF_OCR_REMOTE_URL": ("ocr_remote_url", str),
    "PAYPROOF_OCR_REMOTE_API_KEY": ("ocr_remote_api_key", str),
    "PAYPROOF_OCR_FALLBACK_THRESHOLD": ("ocr_fallback_threshold", float),
    "PAYPROOF_MAX_RECEIPT_BYTES": ("max_receipt_bytes", int),
    "PAYPROOF_MIN_CANDIDATE_CONFIDENCE": ("min_candidate_confidence", float),
    "PAYPROOF_AMOUNT_MIN": ("amount_min", float),
    "PAYPROOF_AMOUNT_MAX": ("amount_max", float),
    "PAYPROOF_UPLOAD_TIMEOUT_SECONDS": ("upload_timeout_seconds", float),
    "PAYPROOF_CONFERENCE_YEAR": ("conference_year", int),
    "PAYPROOF_IDENTIFIER_ATTEMPTS": ("identifier_attempts", int),
    "PAYPROOF_PRICING_TIERS_PATH": ("pricing_tiers_path", Path),
    "PAYPROOF_ORPHAN_GRACE_HOURS": ("orphan_grace_hours", float),
    "PAYPROOF_ORPHAN_SWEEP_ENABLED": ("orphan_sweep_enabled", _coerce_bool),
    "PAYPROOF_ORPHAN_SWEEP_INTERVAL_MINUTES": ("orphan_sweep_interval_minutes", float),
}


def _read_env_files(candidates: Iterable[Path] = ENV_FILE_CANDIDATES) -> dict[str, str]:
    """Return ``KEY=value`` pairs from the .env files; later files win."""

    values: dict[str, str] = {}
    for candidate in candidates:
        if not candidate.is_file():
            continue
        for raw_line in candidate.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, raw_value = line.split("=", 1)
            values[key.strip()] = raw_value.strip().strip("'\"")
    return values


def _load_from_env() -> dict[str, object]:
    """Collect overrides from the environment, falling back to .env files."""

    file_values = _read_env_files()
    overrides: dict[str, object] = {}
    for env_key, (field_name, convert) in ENV_FIELDS.items():
        raw = os.environ.get(env_key) or file_values.get(env_key)
        if not raw:
            continue
        try:
            overrides[field_name] = convert(raw)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", env_key, raw)
    return overrides


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings(**_load_from_env())
