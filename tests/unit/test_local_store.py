"""
Unit tests for the local filesystem blob store.

Tests cover:
- Full blob lifecycle (upload, exists, download, list, delete)
- Absent blobs as a first-class outcome
- Atomic writes (no temp files left behind, no partial target)
- Deadlines
- Store factory
"""

import os
import tempfile
from pathlib import Path

import pytest

from dbaas.blobsql_server.config import ServerConfig, StorageBackend, StorageConfig
from dbaas.blobsql_server.storage import (
    BlobStore,
    LocalBlobStore,
    StorageTimeoutError,
    blob_key,
    create_blob_store,
    logical_name,
)


class TestLocalBlobStore:
    """Tests for LocalBlobStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create a store over the temp directory."""
        return LocalBlobStore(data_dir)

    def test_implements_protocol(self, store):
        """LocalBlobStore satisfies the BlobStore protocol."""
        assert isinstance(store, BlobStore)

    @pytest.mark.asyncio
    async def test_lifecycle(self, store):
        """Upload, exists, download, list, delete, exists."""
        await store.upload("db1", b"hello")

        assert await store.exists("db1") is True
        assert await store.download("db1") == b"hello"
        assert await store.list() == ["db1"]

        await store.delete("db1")

        assert await store.exists("db1") is False

    @pytest.mark.asyncio
    async def test_download_missing_returns_none(self, store):
        """Missing blob is absent, not an error."""
        assert await store.download("nope") is None
        assert await store.exists("nope") is False

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, store):
        """Deleting a missing blob does not raise."""
        await store.delete("nope")
        assert await store.exists("nope") is False

    @pytest.mark.asyncio
    async def test_upload_overwrites(self, store):
        """Second upload replaces the content."""
        await store.upload("db1", b"one")
        await store.upload("db1", b"two")

        assert await store.download("db1") == b"two"

    @pytest.mark.asyncio
    async def test_files_use_suffix(self, store, data_dir):
        """Blobs are stored as <name>.sqlite."""
        await store.upload("appdb", b"data")

        assert (Path(data_dir) / "appdb.sqlite").read_bytes() == b"data"

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, store, data_dir):
        """Atomic write leaves only the target file."""
        await store.upload("db1", b"x" * 10000)

        assert sorted(os.listdir(data_dir)) == ["db1.sqlite"]

    @pytest.mark.asyncio
    async def test_list_ignores_other_files(self, store, data_dir):
        """Only *.sqlite files are listed."""
        (Path(data_dir) / "notes.txt").write_text("hi")
        (Path(data_dir) / ".db9.sqlite.abc.tmp").write_bytes(b"partial")
        await store.upload("b", b"2")
        await store.upload("a", b"1")

        assert await store.list() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_expired_deadline(self, store):
        """A zero deadline raises StorageTimeoutError."""
        with pytest.raises(StorageTimeoutError):
            await store.upload("db1", b"data", timeout=0)

    def test_creates_directory(self, data_dir):
        """Missing base directory is created."""
        nested = Path(data_dir) / "a" / "b"
        LocalBlobStore(nested)

        assert nested.is_dir()


class TestKeyMapping:
    """Tests for blob_key()/logical_name()."""

    def test_blob_key(self):
        """Suffix is appended behind the prefix."""
        assert blob_key("appdb") == "appdb.sqlite"
        assert blob_key("appdb", "prod/") == "prod/appdb.sqlite"

    def test_logical_name(self):
        """Framing is stripped; foreign keys are rejected."""
        assert logical_name("prod/appdb.sqlite", "prod/") == "appdb"
        assert logical_name("appdb.sqlite") == "appdb"
        assert logical_name("appdb.db") is None
        assert logical_name("other/appdb.sqlite", "prod/") is None
        assert logical_name(".sqlite") is None


class TestCreateBlobStore:
    """Tests for the store factory."""

    def test_local_backend(self):
        """LOCAL backend builds a LocalBlobStore."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = ServerConfig(
                storage=StorageConfig(backend=StorageBackend.LOCAL, local_base_path=tmpdir)
            )

            store = create_blob_store(config)

            assert isinstance(store, LocalBlobStore)
            assert store.base_path == Path(tmpdir)
