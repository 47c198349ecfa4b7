"""Prometheus metrics definitions for Payproof."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "payproof_http_requests_total",
    "Total number of HTTP requests processed by the Payproof API",
    ["method", "path", "status"],
)

REQUEST_LATENCY = Histogram(
    "payproof_http_request_duration_seconds",
    "Latency of HTTP requests processed by the Payproof API",
    ["method", "path"],
)

EXTRACTIONS = Counter(
    "payproof_extractions_total",
    "Number of receipt extractions by outcome",
    ["status", "source"],
)

SUBMISSIONS = Counter(
    "payproof_submissions_total",
    "Number of registration submissions by outcome",
    ["outcome"],
)

UPLOAD_LATENCY = Histogram(
    "payproof_proof_upload_duration_seconds",
    "Time spent uploading payment proofs",
)

ORPHANED_BLOBS = Counter(
    "payproof_orphaned_blobs_total",
    "Payment proof blobs left without a registration record, by event",
    ["event"],
)

__all__ = [
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "EXTRACTIONS",
    "SUBMISSIONS",
    "UPLOAD_LATENCY",
    "ORPHANED_BLOBS",
]
