"""Filesystem blob store for uploaded payment proofs."""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

PROOF_PREFIX = "payment-proofs"
CHUNK_SIZE = 64 * 1024
_PARTIAL_SUFFIX = ".part"


class UploadAborted(RuntimeError):
    """Raised when an upload is cancelled before it completes."""


@dataclass(frozen=True)
class StoredBlob:
    key: str
    size_bytes: int
    modified_at: datetime


def sanitize_filename(filename: Optional[str], default: str = "proof") -> str:
    """Return a safe single-segment filename (letters, digits, ``-_.`` only)."""

    name = PurePosixPath((filename or "").replace("\\", "/")).name
    name = re.sub(r"[^\w\-.]", "_", name)
    name = re.sub(r"_+", "_", name).strip("._")
    return name or default


def proof_key(registration_id: str, filename: Optional[str]) -> str:
    return f"{PROOF_PREFIX}/{registration_id}/{sanitize_filename(filename)}"


def registration_id_from_key(key: str) -> Optional[str]:
    parts = key.split("/")
    if len(parts) >= 3 and parts[0] == PROOF_PREFIX and parts[1]:
        return parts[1]
    return None


class LocalBlobStore:
    """Store blobs as files under ``root``.

    Uploads are written in chunks to a temporary file and renamed into place,
    so a reader never sees a partial proof. ``cancel`` lets another thread
    abort a running upload; the partial file is removed.
    """

    def __init__(
        self,
        root: Path,
        *,
        public_base_url: Optional[str] = None,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._root = Path(root)
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._chunk_size = max(1, chunk_size)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or any(part in {"", ".", ".."} for part in parts) or key.startswith("/"):
            raise ValueError(f"Invalid blob key {key!r}")
        return self._root.joinpath(*parts)

    def url_for(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return self._path(key).resolve().as_uri()

    def upload(
        self,
        data: bytes,
        key: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """Write ``data`` under ``key`` and return its URL."""

        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + _PARTIAL_SUFFIX)
        total = len(data)
        written = 0
        try:
            with partial.open("wb") as handle:
                for offset in range(0, total, self._chunk_size):
                    if cancel is not None and cancel.is_set():
                        raise UploadAborted(f"Upload of {key} was cancelled")
                    chunk = data[offset : offset + self._chunk_size]
                    handle.write(chunk)
                    written += len(chunk)
                    if on_progress is not None:
                        on_progress(written / total)
            if cancel is not None and cancel.is_set():
                raise UploadAborted(f"Upload of {key} was cancelled")
            os.replace(partial, path)
        except Exception:
            partial.unlink(missing_ok=True)
            raise

        if on_progress is not None and total == 0:
            on_progress(1.0)
        logger.debug("Stored blob %s (%s bytes)", key, total)
        return self.url_for(key)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        parent = path.parent
        # Drop the now-empty per-registration directory.
        if parent != self._root and not any(parent.iterdir()):
            parent.rmdir()
        return True

    def list_blobs(self, prefix: str = "") -> List[StoredBlob]:
        base = self._path(prefix) if prefix else self._root
        if not base.exists():
            return []
        blobs: List[StoredBlob] = []
        for path in sorted(base.rglob("*")):
            if not path.is_file() or path.name.endswith(_PARTIAL_SUFFIX):
                continue
            stat = path.stat()
            blobs.append(
                StoredBlob(
                    key=path.relative_to(self._root).as_posix(),
                    size_bytes=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return blobs


__all__ = [
    "LocalBlobStore",
    "PROOF_PREFIX",
    "ProgressCallback",
    "StoredBlob",
    "UploadAborted",
    "proof_key",
    "registration_id_from_key",
    "sanitize_filename",
]
