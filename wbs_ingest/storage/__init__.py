"""Blob store adapters and upload retry policy."""

from .blob_store import (
    BlobNotFoundError,
    BlobStore,
    BlobStoreError,
    InMemoryBlobStore,
    LocalBlobStore,
    create_blob_store,
)

__all__ = [
    "BlobStore",
    "BlobStoreError",
    "BlobNotFoundError",
    "LocalBlobStore",
    "InMemoryBlobStore",
    "create_blob_store",
]
