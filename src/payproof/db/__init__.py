"""Persistence layer for registrations and the orphaned-proof ledger."""

from .registrations import SqlRegistrationStore
from .repository import get_engine, reset_repository_state, session_scope

__all__ = ["SqlRegistrationStore", "get_engine", "reset_repository_state", "session_scope"]
