"""
Background sync engine for BlobSQL.

The SyncEngine runs a single background task that flushes the working copy
to the blob store. It reacts to three event sources:
- stop: one final synchronous upload, then exit
- commit signal: immediate upload
- timer tick: upload only if a commit is pending or the sync TTL elapsed

Invariants:
    - The commit signal channel has depth 1; extra signals are dropped
      because a second pending flush is redundant with the first
    - The pending flag is cleared only after a successful upload, and only
      if no commit arrived while that upload was in flight
    - A failed upload leaves the flag set; the next tick or stop retries
    - Uploads are serialized; the worker never touches connection locks
    - stop() cancels a scheduled upload in flight, so the final upload
      starts at once and is bounded only by the stop timeout

How to change safely:
    - Keep notify_commit() non-blocking; it runs on the commit path
    - Test coalescing with a slow store before changing the signal channel
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .cache import CacheFile

logger = logging.getLogger(__name__)


class SyncEngine:
    """Schedules uploads of the working copy to the blob store.

    Attributes:
        cache: Working copy to flush
        tick_interval_seconds: Timer period for the fallback check
        upload_timeout: Deadline for scheduled uploads (seconds)

    Example:
        >>> sync = SyncEngine(cache)
        >>> await sync.start()
        >>> await sync.notify_commit()   # after each successful COMMIT
        >>> await sync.stop(timeout=30)  # final flush, bounded
    """

    def __init__(
        self,
        cache: CacheFile,
        tick_interval_seconds: float | None = None,
        upload_timeout: float | None = 30.0,
    ) -> None:
        self.cache = cache
        self.tick_interval_seconds = tick_interval_seconds or cache.sync_interval_seconds
        self.upload_timeout = upload_timeout

        self._signal: asyncio.Queue[None] = asyncio.Queue(maxsize=1)
        self._stop_event = asyncio.Event()
        self._stop_timeout: float | None = None
        self._task: asyncio.Task | None = None
        self._running = False

        # Pending flag and its commit generation, guarded by _pending_lock
        self._pending_lock = asyncio.Lock()
        self._pending = False
        self._generation = 0

        self._upload_lock = asyncio.Lock()
        self._upload_count = 0
        self._failed_upload_count = 0
        self._last_upload: float | None = None
        self._final_upload_ok: bool | None = None

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("Sync engine already running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="blobsql-sync")
        logger.info(
            "Starting sync engine",
            extra={
                "db_name": self.cache.name,
                "tick_interval_seconds": self.tick_interval_seconds,
            },
        )

    async def stop(self, timeout: float | None = None) -> bool:
        """Stop the worker after one final upload.

        A scheduled upload still in flight is cancelled first. Blocks until
        the final upload finishes or its deadline expires.

        Args:
            timeout: Deadline for the final upload (seconds)

        Returns:
            True if the final upload succeeded
        """
        if not self._running or self._task is None:
            return False

        logger.info("Stopping sync engine")
        self._stop_timeout = timeout
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self._running = False
        return bool(self._final_upload_ok)

    async def notify_commit(self) -> None:
        """Mark the working copy dirty and wake the worker.

        Never waits on the signal channel: if a signal is already queued,
        this one is redundant and dropped.
        """
        async with self._pending_lock:
            self._pending = True
            self._generation += 1

        try:
            self._signal.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def force_upload(self, timeout: float | None = None) -> int:
        """Upload now, bypassing scheduling.

        Args:
            timeout: Deadline in seconds (defaults to upload_timeout)

        Returns:
            Number of bytes uploaded

        Raises:
            StorageError: If the upload fails or its deadline expires
        """
        async with self._upload_lock:
            async with self._pending_lock:
                generation = self._generation

            size = await self.cache.upload(timeout=timeout or self.upload_timeout)

            async with self._pending_lock:
                if self._generation == generation:
                    self._pending = False

            self._upload_count += 1
            self._last_upload = time.time()
            return size

    async def _perform_upload(self, reason: str, timeout: float | None = None) -> bool:
        try:
            size = await self.force_upload(timeout=timeout)
        except Exception as e:
            self._failed_upload_count += 1
            logger.error(
                f"Failed to upload database to blob storage: {e}",
                extra={"db_name": self.cache.name, "reason": reason},
            )
            return False

        logger.info(
            "Uploaded database to blob storage",
            extra={"db_name": self.cache.name, "reason": reason, "size_bytes": size},
        )
        return True

    async def _should_upload_on_tick(self) -> bool:
        async with self._pending_lock:
            pending = self._pending
        return pending or self.cache.should_sync()

    async def _wait_for_event(self) -> bool:
        """Wait for a commit signal, stop or tick. Returns True on commit signal."""
        getter = asyncio.ensure_future(self._signal.get())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait(
                {getter, stopper},
                timeout=self.tick_interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in (getter, stopper):
                if not waiter.done():
                    waiter.cancel()
        return getter.done() and not getter.cancelled()

    async def _scheduled_upload(self, reason: str) -> None:
        """Upload unless stop() arrives first; stop cancels the upload in flight."""
        upload = asyncio.ensure_future(self._perform_upload(reason))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({upload, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not upload.done():
                upload.cancel()
                try:
                    await upload
                except asyncio.CancelledError:
                    logger.info(
                        "Scheduled upload cancelled by stop",
                        extra={"db_name": self.cache.name, "reason": reason},
                    )

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                signalled = await self._wait_for_event()
                if self._stop_event.is_set():
                    break

                if signalled:
                    await self._scheduled_upload("commit")
                elif await self._should_upload_on_tick():
                    await self._scheduled_upload("timer")

        except asyncio.CancelledError:
            logger.info("Sync engine cancelled")
            raise
        except Exception as e:
            logger.error(f"Sync engine error: {e}", exc_info=True)

        # Final flush before exit
        logger.info("Uploading final database state to blob storage")
        self._final_upload_ok = await self._perform_upload(
            "shutdown", timeout=self._stop_timeout
        )

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def idle(self) -> bool:
        """No queued signal and no upload in flight."""
        return self._signal.empty() and not self._upload_lock.locked()

    @property
    def stats(self) -> dict[str, Any]:
        """Get sync engine statistics."""
        return {
            "running": self._running,
            "pending": self._pending,
            "upload_count": self._upload_count,
            "failed_upload_count": self._failed_upload_count,
            "last_upload": self._last_upload,
        }
