"""
Base protocol and types for blob storage backends.

This module defines the BlobStore protocol that all backends must implement,
along with the shared name-to-key mapping, deadline handling and errors.

Invariants:
    - Absent is a first-class outcome: download() returns None, exists()
      returns False; neither is inferred from an error message
    - One blob per logical database, keyed "<prefix><name>.sqlite"
    - Every operation accepts a deadline (seconds); an expired deadline
      raises StorageTimeoutError
    - delete() of a missing blob is not an error

How to change safely:
    - Protocol changes require updating all implementations
    - Keep key framing in blob_key()/logical_name() so listing stays symmetric
    - Test new backends against InMemoryBlobStore behavior
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from collections.abc import Awaitable
from typing import (
    TYPE_CHECKING,
    Protocol,
    TypeVar,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Suffix identifying the embedded database format.
DB_SUFFIX = ".sqlite"


class StorageError(Exception):
    """Base exception for blob storage operations."""

    pass


class StorageConnectionError(StorageError):
    """Connection to the storage backend failed."""

    pass


class StorageTimeoutError(StorageError):
    """Storage operation exceeded its deadline."""

    pass


def blob_key(name: str, prefix: str = "") -> str:
    """Map a logical database name to a backend key.

    Args:
        name: Logical database name
        prefix: Optional caller-configured key prefix

    Returns:
        Backend object key
    """
    return f"{prefix}{name}{DB_SUFFIX}"


def logical_name(key: str, prefix: str = "") -> str | None:
    """Recover the logical database name from a backend key.

    Args:
        key: Backend object key
        prefix: Key prefix the store was configured with

    Returns:
        Logical name, or None if the key is not a database blob
    """
    if not key.startswith(prefix) or not key.endswith(DB_SUFFIX):
        return None
    name = key[len(prefix) : len(key) - len(DB_SUFFIX)]
    if not name:
        return None
    return name


async def run_with_deadline(
    operation: str,
    awaitable: Awaitable[T],
    timeout: float | None,
) -> T:
    """Await a storage call, converting an expired deadline.

    Args:
        operation: Operation name for the error message
        awaitable: The storage call
        timeout: Deadline in seconds (None waits indefinitely)

    Returns:
        The call's result

    Raises:
        StorageTimeoutError: If the deadline expires
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise StorageTimeoutError(f"{operation} exceeded deadline of {timeout}s") from None


@runtime_checkable
class BlobStore(Protocol):
    """Protocol for blob storage backends.

    Durability contract:
        - upload() is all-or-nothing: readers see the previous blob or the
          new one, never a partial object
        - Local backend: temp file + atomic rename
        - Remote backends: single PUT

    Example:
        >>> store = LocalBlobStore("./data")
        >>> await store.upload("appdb", b"...")
        >>> data = await store.download("appdb")
    """

    @abstractmethod
    async def download(self, name: str, timeout: float | None = None) -> bytes | None:
        """Fetch a blob.

        Args:
            name: Logical database name
            timeout: Deadline in seconds

        Returns:
            Blob content, or None if the blob does not exist

        Raises:
            StorageTimeoutError: If the deadline expires
            StorageError: For other failures
        """
        ...

    @abstractmethod
    async def upload(self, name: str, data: bytes, timeout: float | None = None) -> None:
        """Store a blob, overwriting any existing one.

        Args:
            name: Logical database name
            data: Full blob content
            timeout: Deadline in seconds

        Raises:
            StorageTimeoutError: If the deadline expires
            StorageError: For other failures
        """
        ...

    @abstractmethod
    async def list(self, timeout: float | None = None) -> list[str]:
        """List logical database names present in the store."""
        ...

    @abstractmethod
    async def delete(self, name: str, timeout: float | None = None) -> None:
        """Delete a blob. Deleting a missing blob is a no-op."""
        ...

    @abstractmethod
    async def exists(self, name: str, timeout: float | None = None) -> bool:
        """Whether a blob exists.

        Raises:
            StorageError: If existence cannot be determined
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


def create_blob_store(config: ServerConfig) -> BlobStore:
    """Factory function to create a blob store from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate BlobStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .azure import AzureBlobStore
    from .local import LocalBlobStore
    from .s3 import S3BlobStore

    if config.storage.backend == StorageBackend.LOCAL:
        return LocalBlobStore(config.storage.local_base_path)
    elif config.storage.backend == StorageBackend.S3:
        return S3BlobStore(config.s3)
    elif config.storage.backend == StorageBackend.AZURE:
        return AzureBlobStore(config.azure)
    else:
        raise ValueError(f"Unsupported storage backend: {config.storage.backend}")
