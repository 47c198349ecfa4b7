"""Logging setup for Payproof.

Registrant emails and phone numbers reach log messages through validation
errors and duplicate checks, so every record is masked before a handler
writes it. Configured secrets such as the remote OCR key are replaced
outright.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Pattern, Sequence, Tuple

REDACTED = "[redacted]"

_MASKING_RULES: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/=]+", re.IGNORECASE), r"\1" + REDACTED),
    (re.compile(r"((?:api_key|token)=)[^&\s]+", re.IGNORECASE), r"\1" + REDACTED),
    (
        re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})"),
        r"\1***\2",
    ),
    (re.compile(r"(?<!\d)((?:\+63|0)9\d{2})\d{5}(\d{2})(?!\d)"), r"\1*****\2"),
)

# Record attributes passed through ``extra=`` and copied into JSON lines.
CONTEXT_FIELDS = ("request_id", "registration_id")

_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def redact(text: str, secrets: Sequence[str] = ()) -> str:
    """Mask tokens and contact details in ``text`` and drop known secrets."""

    for pattern, replacement in _MASKING_RULES:
        text = pattern.sub(replacement, text)
    for secret in secrets:
        text = text.replace(secret, REDACTED)
    return text


class RedactingFilter(logging.Filter):
    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets = tuple(secret.strip() for secret in secrets if secret and secret.strip())

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 - standard interface
        message = record.getMessage()
        cleaned = redact(message, self._secrets)
        if cleaned != message:
            record.msg = cleaned
            record.args = ()
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if isinstance(value, str):
                setattr(record, name, redact(value, self._secrets))
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with request and registration context."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - override
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def _formatter(fmt: str) -> logging.Formatter:
    if (fmt or "plain").lower() == "json":
        return JsonFormatter()
    return logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


def configure_logging(level_name: str, fmt: str, secrets: Iterable[str]) -> None:
    """Route all logging, uvicorn's included, through one redacting handler."""

    level = getattr(logging, level_name.upper(), logging.INFO)
    redactor = RedactingFilter(secrets)

    handler = logging.StreamHandler()
    handler.setFormatter(_formatter(fmt))
    handler.addFilter(redactor)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    logging.captureWarnings(True)

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = []
        server_logger.setLevel(level)
        server_logger.propagate = True


__all__ = [
    "CONTEXT_FIELDS",
    "JsonFormatter",
    "REDACTED",
    "RedactingFilter",
    "configure_logging",
    "redact",
]
