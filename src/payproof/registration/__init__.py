"""Registration submission."""

from .coordinator import BlobStore, RegistrationCoordinator, RegistrationStore
from .identifiers import IdentifierIssuer

__all__ = ["BlobStore", "IdentifierIssuer", "RegistrationCoordinator", "RegistrationStore"]
