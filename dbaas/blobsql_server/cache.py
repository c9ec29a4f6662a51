"""
Local working copy of the database for BlobSQL.

The CacheFile materializes the logical database from the blob store into a
process-private file at startup, hands its path to the engine, and
produces consistent images of it for upload.

Local path format:
    <cache_dir>/<name>-<unix_ms>.sqlite

Invariants:
    - Exactly one CacheFile per running server for a logical database
    - Only the owning process writes the local path
    - The local path is fresh per instantiation; a file left open by a
      previous instance is never overwritten
    - A missing blob bootstraps an empty local file instead of failing
    - Uploads send a consistent image (SQLite online backup API), so a
      WAL-mode working copy is captured with its pending frames

How to change safely:
    - Keep snapshots read-only against the working copy
    - Test restore of an uploaded image before changing the snapshot method
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import tempfile
import time
from pathlib import Path

from .storage.base import BlobStore

logger = logging.getLogger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"

# Side files SQLite may create next to the working copy
SIDE_SUFFIXES = ("-wal", "-shm", "-journal")


class CacheFile:
    """Process-private working copy of one logical database.

    Attributes:
        store: Blob store holding the durable image
        name: Logical database name
        sync_interval_seconds: Maximum time between uploads
        timeout: Default deadline for storage calls (seconds)
        local_path: Path of the working copy

    Example:
        >>> cache = CacheFile(store, "appdb", sync_interval_seconds=300)
        >>> await cache.download()
        >>> engine = SQLiteEngine(cache.local_path)
        >>> await cache.upload()
    """

    def __init__(
        self,
        store: BlobStore,
        name: str,
        sync_interval_seconds: float = 300.0,
        cache_dir: str | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self.store = store
        self.name = name
        self.sync_interval_seconds = sync_interval_seconds
        self.timeout = timeout

        base = Path(cache_dir or tempfile.gettempdir())
        base.mkdir(parents=True, exist_ok=True)
        self.local_path = base / f"{name}-{int(time.time() * 1000)}.sqlite"

        self._last_sync: float | None = None
        self.last_sync_at: float | None = None

    def _mark_synced(self) -> None:
        self._last_sync = time.monotonic()
        self.last_sync_at = time.time()

    async def download(self, timeout: float | None = None) -> bool:
        """Materialize the working copy from the blob store.

        Args:
            timeout: Deadline in seconds (defaults to self.timeout)

        Returns:
            True if an existing blob was downloaded, False if an empty
            working copy was created because the blob is absent

        Raises:
            StorageError: If the blob store fails
            OSError: If the local file cannot be written
        """
        data = await self.store.download(self.name, timeout=timeout or self.timeout)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_local, data or b"")
        self._mark_synced()

        if data is None:
            logger.info(
                "Database not found in blob storage, created empty working copy",
                extra={"db_name": self.name, "local_path": str(self.local_path)},
            )
            return False

        logger.info(
            "Downloaded database to working copy",
            extra={
                "db_name": self.name,
                "local_path": str(self.local_path),
                "size_bytes": len(data),
            },
        )
        return True

    def _write_local(self, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.local_path.name}.", suffix=".tmp", dir=self.local_path.parent
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.local_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def snapshot(self) -> bytes:
        """Produce a consistent image of the working copy.

        SQLite files, and working copies with a WAL, are copied with the
        online backup API; anything else (including an empty bootstrap
        file) is read verbatim.
        """
        with open(self.local_path, "rb") as f:
            header = f.read(len(SQLITE_HEADER))
        if header != SQLITE_HEADER and not Path(f"{self.local_path}-wal").exists():
            return self.local_path.read_bytes()

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.local_path.name}.", suffix=".snap", dir=self.local_path.parent
        )
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            source_conn = sqlite3.connect(str(self.local_path))
            dest_conn = sqlite3.connect(tmp_name)
            try:
                source_conn.backup(dest_conn)
            finally:
                source_conn.close()
                dest_conn.close()
            return tmp_path.read_bytes()
        finally:
            tmp_path.unlink(missing_ok=True)

    async def upload(self, timeout: float | None = None) -> int:
        """Upload a consistent image of the working copy.

        Overwrite is unconditional (last writer wins).

        Args:
            timeout: Deadline in seconds (defaults to self.timeout)

        Returns:
            Number of bytes uploaded

        Raises:
            StorageError: If the upload fails or times out
        """
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self.snapshot)
        await self.store.upload(self.name, data, timeout=timeout or self.timeout)
        self._mark_synced()

        logger.debug(
            "Uploaded working copy",
            extra={"db_name": self.name, "size_bytes": len(data)},
        )
        return len(data)

    def should_sync(self) -> bool:
        """Whether the sync interval has elapsed since the last sync."""
        if self._last_sync is None:
            return True
        return time.monotonic() - self._last_sync > self.sync_interval_seconds

    def cleanup(self) -> None:
        """Remove the working copy and SQLite side files."""
        for path in [self.local_path] + [
            Path(f"{self.local_path}{suffix}") for suffix in SIDE_SUFFIXES
        ]:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove cache file {path}: {e}")
