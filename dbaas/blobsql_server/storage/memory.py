"""
In-memory blob store implementation for testing.

This module provides a simple in-memory backend for:
- Unit tests
- Integration tests of the sync engine
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - Same absent/exists semantics as production backends
    - Uploads store a copy of the bytes, never a shared buffer

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with BlobStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging

from .base import StorageError, run_with_deadline

logger = logging.getLogger(__name__)


class InMemoryBlobStore:
    """In-memory implementation of BlobStore for testing.

    Besides the protocol, it exposes helpers for tests: operation
    counters, an injectable failure for the next uploads and an
    artificial upload delay for deadline tests.

    Example:
        >>> store = InMemoryBlobStore()
        >>> await store.upload("db1", b"hello")
        >>> await store.download("db1")
        b'hello'
    """

    def __init__(self, upload_delay: float = 0.0) -> None:
        """Initialize an empty store.

        Args:
            upload_delay: Seconds each upload sleeps before storing
        """
        self.upload_delay = upload_delay
        self._blobs: dict[str, bytes] = {}
        self._lock = asyncio.Lock()
        self._fail_uploads = 0
        self.upload_count = 0
        self.download_count = 0
        self.uploads: list[bytes] = []

    def fail_next_uploads(self, count: int = 1) -> None:
        """Make the next `count` uploads raise StorageError."""
        self._fail_uploads = count

    async def download(self, name: str, timeout: float | None = None) -> bytes | None:
        async with self._lock:
            self.download_count += 1
            return self._blobs.get(name)

    async def upload(self, name: str, data: bytes, timeout: float | None = None) -> None:
        await run_with_deadline("upload", self._upload(name, data), timeout)

    async def _upload(self, name: str, data: bytes) -> None:
        if self.upload_delay:
            await asyncio.sleep(self.upload_delay)

        async with self._lock:
            if self._fail_uploads > 0:
                self._fail_uploads -= 1
                raise StorageError(f"Injected upload failure for {name}")

            self._blobs[name] = bytes(data)
            self.upload_count += 1
            self.uploads.append(bytes(data))

        logger.debug("Blob stored in memory", extra={"name": name, "size_bytes": len(data)})

    async def list(self, timeout: float | None = None) -> list[str]:
        async with self._lock:
            return sorted(self._blobs)

    async def delete(self, name: str, timeout: float | None = None) -> None:
        async with self._lock:
            self._blobs.pop(name, None)

    async def exists(self, name: str, timeout: float | None = None) -> bool:
        async with self._lock:
            return name in self._blobs

    async def close(self) -> None:
        pass
