"""
Unit tests for server configuration.

Tests cover:
- Defaults
- Loading from environment variables
- Validation of storage backends, modes and limits
"""

import pytest

from dbaas.blobsql_server.config import (
    AzureConfig,
    DatabaseConfig,
    S3Config,
    ServerConfig,
    StorageBackend,
    StorageConfig,
)

ENV_VARS = (
    "HTTP_HOST",
    "HTTP_PORT",
    "PG_USER",
    "PG_PASSWORD",
    "DB_NAME",
    "TRANSACTION_MODE",
    "CONNECTION_POOL_SIZE",
    "SQLITE_BUSY_TIMEOUT_MS",
    "SQLITE_JOURNAL_MODE",
    "STORAGE",
    "LOCAL_BASE_PATH",
    "CACHE_DIR",
    "CACHE_TTL_MINUTES",
    "STORAGE_TIMEOUT_SECONDS",
    "SHUTDOWN_UPLOAD_TIMEOUT_SECONDS",
    "S3_BUCKET",
    "S3_PREFIX",
    "AZURE_STORAGE_ACCOUNT",
    "AZURE_STORAGE_CONTAINER",
    "AZURE_STORAGE_KEY",
    "AZURE_USE_MANAGED_IDENTITY",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


class TestServerConfig:
    """Tests for ServerConfig."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        """Start every test from an empty configuration environment."""
        for name in ENV_VARS:
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        """Defaults work for local development."""
        config = ServerConfig.from_env()

        assert config.http.port == 8080
        assert config.database.name == "myapp"
        assert config.database.transaction_mode == "deferred"
        assert config.database.connection_pool_size == 10
        assert config.storage.backend == StorageBackend.LOCAL
        assert config.storage.sync_interval_seconds == 300.0
        assert config.observability.log_format == "json"

    def test_from_env(self, monkeypatch):
        """Environment variables populate every section."""
        monkeypatch.setenv("HTTP_PORT", "9090")
        monkeypatch.setenv("DB_NAME", "appdb")
        monkeypatch.setenv("TRANSACTION_MODE", "IMMEDIATE")
        monkeypatch.setenv("CONNECTION_POOL_SIZE", "4")
        monkeypatch.setenv("CACHE_TTL_MINUTES", "2")
        monkeypatch.setenv("STORAGE", "s3")
        monkeypatch.setenv("S3_BUCKET", "dbs")
        monkeypatch.setenv("S3_PREFIX", "prod/")

        config = ServerConfig.from_env()

        assert config.http.port == 9090
        assert config.database.name == "appdb"
        assert config.database.transaction_mode == "immediate"
        assert config.database.connection_pool_size == 4
        assert config.storage.sync_interval_seconds == 120.0
        assert config.storage.backend == StorageBackend.S3
        assert config.s3.bucket == "dbs"
        assert config.s3.prefix == "prod/"

    def test_unknown_backend_rejected(self, monkeypatch):
        """Unknown STORAGE fails at load time."""
        monkeypatch.setenv("STORAGE", "ftp")

        with pytest.raises(ValueError, match="STORAGE"):
            ServerConfig.from_env()

    def test_s3_requires_bucket(self):
        """S3 backend needs a bucket."""
        config = ServerConfig(storage=StorageConfig(backend=StorageBackend.S3))

        with pytest.raises(ValueError, match="S3_BUCKET"):
            config.validate()

    def test_azure_requires_account_and_container(self):
        """Azure backend needs account, container and a credential."""
        config = ServerConfig(
            storage=StorageConfig(backend=StorageBackend.AZURE),
            azure=AzureConfig(container="dbs", key="secret"),
        )
        with pytest.raises(ValueError, match="AZURE_STORAGE_ACCOUNT"):
            config.validate()

        config = ServerConfig(
            storage=StorageConfig(backend=StorageBackend.AZURE),
            azure=AzureConfig(account="acct", container="dbs"),
        )
        with pytest.raises(ValueError, match="AZURE_STORAGE_KEY"):
            config.validate()

    def test_azure_managed_identity_needs_no_key(self):
        """Managed identity replaces the account key."""
        config = ServerConfig(
            storage=StorageConfig(backend=StorageBackend.AZURE),
            azure=AzureConfig(account="acct", container="dbs", use_managed_identity=True),
        )

        config.validate()

    def test_invalid_transaction_mode(self):
        """Unknown transaction mode is rejected."""
        config = ServerConfig(database=DatabaseConfig(transaction_mode="eager"))

        with pytest.raises(ValueError, match="TRANSACTION_MODE"):
            config.validate()

    def test_invalid_journal_mode(self):
        """Unknown journal mode is rejected."""
        config = ServerConfig(database=DatabaseConfig(journal_mode="fast"))

        with pytest.raises(ValueError, match="SQLITE_JOURNAL_MODE"):
            config.validate()

    def test_non_positive_limits(self):
        """Pool size and sync interval must be positive."""
        with pytest.raises(ValueError, match="CONNECTION_POOL_SIZE"):
            ServerConfig(database=DatabaseConfig(connection_pool_size=0)).validate()

        with pytest.raises(ValueError, match="CACHE_TTL_MINUTES"):
            ServerConfig(storage=StorageConfig(cache_ttl_minutes=0)).validate()

    def test_s3_config_is_frozen(self):
        """Config sections are immutable."""
        config = S3Config(bucket="dbs")

        with pytest.raises(AttributeError):
            config.bucket = "other"
