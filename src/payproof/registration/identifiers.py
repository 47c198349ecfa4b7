"""Registration id and short code issuance."""

from __future__ import annotations

import logging
import secrets
import threading
from collections import deque
from typing import Callable, Deque, Optional, Set

from payproof.errors import PersistenceFailure

logger = logging.getLogger(__name__)

# Base32 alphabet for registration ids.
REGISTRATION_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
# No 0/O or 1/I so codes survive being read aloud or copied by hand.
SHORT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SHORT_CODE_LENGTH = 6
SHORT_CODE_SUFFIX_LENGTH = 4


def new_registration_id(year: int) -> str:
    body = "".join(secrets.choice(REGISTRATION_ALPHABET) for _ in range(8))
    return f"REG-{year}-{body}"


def new_short_code(length: int = SHORT_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))


def short_code_suffix(short_code: str) -> str:
    return short_code[-SHORT_CODE_SUFFIX_LENGTH:]


class IdentifierIssuer:
    """Issue short codes that are unique in the store and in this process.

    Codes handed out recently are remembered so two submissions racing through
    the store check cannot both receive the same code. The store's unique
    constraint remains the final guard.
    """

    def __init__(
        self,
        *,
        year: int,
        is_taken: Callable[[str], bool],
        attempts: int = 5,
        window: int = 4096,
        code_factory: Callable[[], str] = new_short_code,
        id_factory: Optional[Callable[[int], str]] = None,
    ) -> None:
        self._year = year
        self._is_taken = is_taken
        self._attempts = max(1, attempts)
        self._code_factory = code_factory
        self._id_factory = id_factory or new_registration_id
        self._recent: Deque[str] = deque(maxlen=window)
        self._recent_set: Set[str] = set()
        self._lock = threading.Lock()

    def registration_id(self) -> str:
        return self._id_factory(self._year)

    def short_code(self) -> str:
        for attempt in range(1, self._attempts + 1):
            code = self._code_factory()
            with self._lock:
                if code in self._recent_set:
                    logger.debug("Short code collided with a recent issue (attempt %s)", attempt)
                    continue
            if self._is_taken(code):
                logger.debug("Short code already stored (attempt %s)", attempt)
                continue
            with self._lock:
                if code in self._recent_set:
                    continue
                self._remember(code)
            return code
        raise PersistenceFailure(
            f"Could not issue a unique short code after {self._attempts} attempts."
        )

    def _remember(self, code: str) -> None:
        if len(self._recent) == self._recent.maxlen:
            self._recent_set.discard(self._recent[0])
        self._recent.append(code)
        self._recent_set.add(code)


__all__ = [
    "IdentifierIssuer",
    "SHORT_CODE_ALPHABET",
    "new_registration_id",
    "new_short_code",
    "short_code_suffix",
]
