"""
Local filesystem blob store.

Stores each database as "<base_path>/<name>.sqlite". Intended for
single-host deployments, development and tests that want real files.

Invariants:
    - upload() writes a temp file in the same directory, fsyncs it and
      renames it over the target, so no partial file is ever visible
      under the blob name
    - A deadline that expires before the rename discards the temp file
    - download() of a missing file returns None

How to change safely:
    - Keep temp files in the target directory (rename must not cross
      filesystems)
    - Keep temp file names outside the "*.sqlite" pattern so list()
      never reports them
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import threading
from pathlib import Path

from .base import (
    DB_SUFFIX,
    StorageError,
    StorageTimeoutError,
    blob_key,
    logical_name,
    run_with_deadline,
)

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """BlobStore backed by a local directory.

    Blocking file I/O runs in the default executor so the event loop
    stays responsive while large databases are copied.

    Attributes:
        base_path: Directory holding the blobs

    Example:
        >>> store = LocalBlobStore("./data")
        >>> await store.upload("db1", b"hello")
        >>> await store.exists("db1")
        True
    """

    def __init__(self, base_path: str | Path) -> None:
        """Initialize the store, creating the directory if needed.

        Args:
            base_path: Directory for blob files

        Raises:
            StorageError: If the directory cannot be created
        """
        self.base_path = Path(base_path)
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create storage directory {self.base_path}: {e}") from e

    def _path(self, name: str) -> Path:
        return self.base_path / blob_key(name)

    async def _run(self, operation: str, func, *args, timeout: float | None = None):
        loop = asyncio.get_running_loop()
        return await run_with_deadline(
            operation,
            loop.run_in_executor(None, func, *args),
            timeout,
        )

    async def download(self, name: str, timeout: float | None = None) -> bytes | None:
        """Read a blob file, or None if it does not exist."""
        return await self._run("download", self._read, name, timeout=timeout)

    def _read(self, name: str) -> bytes | None:
        try:
            return self._path(name).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read database file {name}: {e}") from e

    async def upload(self, name: str, data: bytes, timeout: float | None = None) -> None:
        """Atomically replace a blob file."""
        abandoned = threading.Event()
        try:
            await self._run("upload", self._write, name, data, abandoned, timeout=timeout)
        except StorageTimeoutError:
            abandoned.set()
            raise

        logger.debug("Uploaded blob to local store", extra={"name": name, "size_bytes": len(data)})

    def _write(self, name: str, data: bytes, abandoned: threading.Event) -> None:
        target = self._path(name)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=self.base_path)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            if abandoned.is_set():
                raise StorageTimeoutError(f"upload of {name} abandoned after deadline")

            os.replace(tmp_path, target)
        except StorageTimeoutError:
            tmp_path.unlink(missing_ok=True)
            raise
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write database file {name}: {e}") from e

    async def list(self, timeout: float | None = None) -> list[str]:
        """List logical names of "*.sqlite" files in the directory."""
        return await self._run("list", self._list, timeout=timeout)

    def _list(self) -> list[str]:
        try:
            entries = sorted(self.base_path.iterdir())
        except OSError as e:
            raise StorageError(f"Failed to read directory {self.base_path}: {e}") from e

        names = []
        for entry in entries:
            if entry.is_file() and entry.name.endswith(DB_SUFFIX):
                name = logical_name(entry.name)
                if name:
                    names.append(name)
        return names

    async def delete(self, name: str, timeout: float | None = None) -> None:
        """Remove a blob file; missing files are ignored."""
        await self._run("delete", self._delete, name, timeout=timeout)

    def _delete(self, name: str) -> None:
        try:
            self._path(name).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete database {name}: {e}") from e

    async def exists(self, name: str, timeout: float | None = None) -> bool:
        """Whether the blob file exists."""
        return await self._run("exists", self._exists, name, timeout=timeout)

    def _exists(self, name: str) -> bool:
        try:
            self._path(name).stat()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to stat database {name}: {e}") from e
        return True

    async def close(self) -> None:
        """Nothing to release for the local store."""
        pass
