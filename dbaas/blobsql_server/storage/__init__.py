"""
Blob storage abstraction for BlobSQL.

This module provides a pluggable backend interface supporting:
- Local filesystem (atomic temp-file + rename writes)
- S3 and S3-compatible object stores
- Azure Blob Storage
- In-memory (for testing)

The blob store holds the durable image of each logical database. The
local working copy is materialized from it at startup and flushed back
by the sync engine.

Invariants:
    - "Absent" is a distinct outcome (None / False), never an error
    - Uploads are all-or-nothing and last-writer-wins
    - Every operation honors a caller-supplied deadline

How to change safely:
    - New backends must implement BlobStore protocol
    - Reuse blob_key()/logical_name() for key framing
    - Verify partial-write behavior under timeouts
"""

from .base import (
    DB_SUFFIX,
    BlobStore,
    StorageConnectionError,
    StorageError,
    StorageTimeoutError,
    blob_key,
    create_blob_store,
    logical_name,
)
from .azure import AzureBlobStore
from .local import LocalBlobStore
from .memory import InMemoryBlobStore
from .s3 import S3BlobStore

__all__ = [
    # Protocol and types
    "BlobStore",
    "DB_SUFFIX",
    "StorageError",
    "StorageConnectionError",
    "StorageTimeoutError",
    "blob_key",
    "logical_name",
    # Factory
    "create_blob_store",
    # Implementations
    "LocalBlobStore",
    "S3BlobStore",
    "AzureBlobStore",
    "InMemoryBlobStore",
]
