"""
Integration tests for the sync engine with an in-memory blob store.

Tests cover:
- Upload on commit signal
- Coalescing of commit bursts
- Retry after a failed upload
- Final flush on stop
- Stop cancelling a scheduled upload in flight
- Timer-driven uploads
"""

import asyncio
import sqlite3
import tempfile
import time
from pathlib import Path

import pytest

from dbaas.blobsql_server.cache import CacheFile
from dbaas.blobsql_server.storage import InMemoryBlobStore, StorageError
from dbaas.blobsql_server.sync import SyncEngine


async def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is true or fail after timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class TestSyncEngine:
    """Integration tests for SyncEngine."""

    @pytest.fixture
    def cache_dir(self):
        """Create temporary cache directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self):
        return InMemoryBlobStore()

    @pytest.fixture
    def cache(self, store, cache_dir):
        return CacheFile(store, "appdb", sync_interval_seconds=3600, cache_dir=cache_dir)

    def write_row(self, cache, value):
        conn = sqlite3.connect(str(cache.local_path), isolation_level=None)
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS t (v TEXT)")
            conn.execute("INSERT INTO t VALUES (?)", (value,))
        finally:
            conn.close()

    def rows_in(self, image, cache_dir):
        """Restore an uploaded image and read back its rows."""
        path = Path(cache_dir) / "restored.sqlite"
        path.write_bytes(image)
        conn = sqlite3.connect(str(path))
        try:
            return [r[0] for r in conn.execute("SELECT v FROM t ORDER BY rowid")]
        finally:
            conn.close()

    @pytest.mark.asyncio
    async def test_commit_triggers_upload(self, store, cache, cache_dir):
        """A commit signal uploads the working copy."""
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=60)
        await sync.start()
        try:
            self.write_row(cache, "a")
            await sync.notify_commit()

            await wait_until(lambda: store.upload_count >= 1 and not sync.pending)
            assert self.rows_in(store.uploads[-1], cache_dir) == ["a"]
        finally:
            await sync.stop(timeout=5)

    @pytest.mark.asyncio
    async def test_commit_burst_is_coalesced(self, cache_dir):
        """Many commits during a slow upload produce fewer uploads, ending current."""
        store = InMemoryBlobStore(upload_delay=0.05)
        cache = CacheFile(store, "appdb", sync_interval_seconds=3600, cache_dir=cache_dir)
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=60)
        await sync.start()
        try:
            for i in range(10):
                self.write_row(cache, str(i))
                await sync.notify_commit()

            await wait_until(lambda: sync.idle and not sync.pending)

            assert 1 <= store.upload_count < 10
            assert self.rows_in(store.uploads[-1], cache_dir) == [str(i) for i in range(10)]
        finally:
            await sync.stop(timeout=5)

    @pytest.mark.asyncio
    async def test_failed_upload_is_retried_on_tick(self, store, cache, cache_dir):
        """A failed upload leaves the flag set and the next tick retries."""
        await cache.download()
        store.fail_next_uploads(1)
        sync = SyncEngine(cache, tick_interval_seconds=0.05)
        await sync.start()
        try:
            self.write_row(cache, "a")
            await sync.notify_commit()

            await wait_until(lambda: sync.stats["failed_upload_count"] >= 1)
            await wait_until(lambda: store.upload_count >= 1 and not sync.pending)

            assert self.rows_in(store.uploads[-1], cache_dir) == ["a"]
        finally:
            await sync.stop(timeout=5)

    @pytest.mark.asyncio
    async def test_stop_performs_final_upload(self, store, cache, cache_dir):
        """stop() flushes the final state even without a commit signal."""
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=60)
        await sync.start()
        self.write_row(cache, "final")

        ok = await sync.stop(timeout=5)

        assert ok is True
        assert not sync.is_running
        assert self.rows_in(store.uploads[-1], cache_dir) == ["final"]

    @pytest.mark.asyncio
    async def test_stop_reports_failed_final_upload(self, store, cache):
        """A failed final upload is reported to the caller."""
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=60)
        await sync.start()
        store.fail_next_uploads(1)

        ok = await sync.stop(timeout=5)

        assert ok is False
        assert sync.stats["failed_upload_count"] == 1

    @pytest.mark.asyncio
    async def test_stop_respects_deadline(self, cache_dir):
        """The final upload is bounded by the stop timeout."""
        store = InMemoryBlobStore(upload_delay=1.0)
        cache = CacheFile(store, "appdb", cache_dir=cache_dir)
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=60)
        await sync.start()

        started = time.monotonic()
        ok = await sync.stop(timeout=0.05)

        assert ok is False
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_stop_cancels_scheduled_upload(self, cache_dir):
        """stop() does not wait out a slow commit upload before the final one."""
        store = InMemoryBlobStore(upload_delay=2.0)
        cache = CacheFile(store, "appdb", sync_interval_seconds=3600, cache_dir=cache_dir)
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=60)
        await sync.start()
        await sync.notify_commit()
        await asyncio.sleep(0.1)

        started = time.monotonic()
        ok = await sync.stop(timeout=0.5)

        assert time.monotonic() - started < 1.0
        assert ok is False
        assert sync.pending is True
        assert store.upload_count == 0

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, cache):
        sync = SyncEngine(cache)

        assert await sync.stop() is False

    @pytest.mark.asyncio
    async def test_timer_uploads_after_interval(self, store, cache_dir):
        """With no commits, the timer uploads once the sync TTL has elapsed."""
        cache = CacheFile(store, "appdb", sync_interval_seconds=0.05, cache_dir=cache_dir)
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=0.02)
        await sync.start()
        try:
            await wait_until(lambda: store.upload_count >= 1)
            assert sync.stats["upload_count"] >= 1
        finally:
            await sync.stop(timeout=5)

    @pytest.mark.asyncio
    async def test_timer_skips_when_clean(self, store, cache):
        """Ticks do nothing while nothing is pending and the TTL has not elapsed."""
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=0.01)
        await sync.start()
        await asyncio.sleep(0.1)

        assert store.upload_count == 0
        await sync.stop(timeout=5)

    @pytest.mark.asyncio
    async def test_commit_during_upload_stays_pending(self, cache_dir):
        """A commit that lands mid-upload keeps the flag set after that upload."""
        store = InMemoryBlobStore(upload_delay=0.1)
        cache = CacheFile(store, "appdb", sync_interval_seconds=3600, cache_dir=cache_dir)
        await cache.download()
        sync = SyncEngine(cache, tick_interval_seconds=60)

        upload = asyncio.create_task(sync.force_upload())
        await asyncio.sleep(0.02)
        await sync.notify_commit()
        await upload

        assert sync.pending is True

        await sync.force_upload()
        assert sync.pending is False

    @pytest.mark.asyncio
    async def test_force_upload_raises(self, store, cache):
        """force_upload() surfaces storage failures."""
        await cache.download()
        sync = SyncEngine(cache)
        await sync.notify_commit()
        store.fail_next_uploads(1)

        with pytest.raises(StorageError):
            await sync.force_upload()

        assert sync.pending is True
