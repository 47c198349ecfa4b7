"""Blob storage for payment proofs."""

from .blobs import LocalBlobStore, StoredBlob, UploadAborted, proof_key, registration_id_from_key

__all__ = ["LocalBlobStore", "StoredBlob", "UploadAborted", "proof_key", "registration_id_from_key"]
