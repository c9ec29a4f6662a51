"""
Configuration management for BlobSQL Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for credentials and storage
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep from_env() and validate() in sync for every new section
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

TRANSACTION_MODES = ("deferred", "immediate", "exclusive")
JOURNAL_MODES = ("wal", "delete", "truncate", "persist", "memory")


class StorageBackend(Enum):
    """Supported blob storage backends."""

    LOCAL = "local"
    S3 = "s3"
    AZURE = "azure"


@dataclass(frozen=True)
class HttpConfig:
    """HTTP query surface configuration.

    Attributes:
        host: Address to bind
        port: Port to bind
    """

    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
        )


@dataclass(frozen=True)
class AuthConfig:
    """Client authentication configuration.

    Attributes:
        user: Accepted user name
        password: Accepted password
    """

    user: str = "postgres"
    password: str = "postgres"

    @classmethod
    def from_env(cls) -> AuthConfig:
        """Load configuration from environment variables."""
        return cls(
            user=os.getenv("PG_USER", "postgres"),
            password=os.getenv("PG_PASSWORD", "postgres"),
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """Embedded database configuration.

    Attributes:
        name: Logical database name (blob name without suffix)
        transaction_mode: Default BEGIN mode (deferred, immediate, exclusive)
        connection_pool_size: Maximum pooled SQLite handles for autocommit work
        busy_timeout_ms: SQLite busy timeout in milliseconds
        journal_mode: SQLite journal mode for the working copy
    """

    name: str = "myapp"
    transaction_mode: str = "deferred"
    connection_pool_size: int = 10
    busy_timeout_ms: int = 5000
    journal_mode: str = "wal"

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Load configuration from environment variables."""
        return cls(
            name=os.getenv("DB_NAME", "myapp"),
            transaction_mode=os.getenv("TRANSACTION_MODE", "deferred").lower(),
            connection_pool_size=int(os.getenv("CONNECTION_POOL_SIZE", "10")),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            journal_mode=os.getenv("SQLITE_JOURNAL_MODE", "wal").lower(),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Blob storage and working copy configuration.

    Attributes:
        backend: Which blob store to use
        local_base_path: Directory for the local backend
        cache_dir: Directory for the process-private working copy
        cache_ttl_minutes: Maximum time between uploads (sync interval)
        timeout_seconds: Deadline for routine storage operations
        shutdown_upload_timeout_seconds: Deadline for the final upload on exit
    """

    backend: StorageBackend = StorageBackend.LOCAL
    local_base_path: str = "./data"
    cache_dir: str = field(default_factory=tempfile.gettempdir)
    cache_ttl_minutes: int = 5
    timeout_seconds: float = 30.0
    shutdown_upload_timeout_seconds: float = 30.0

    @property
    def sync_interval_seconds(self) -> float:
        return self.cache_ttl_minutes * 60.0

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If STORAGE names an unknown backend
        """
        backend_str = os.getenv("STORAGE", "local").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORAGE '{backend_str}'. Must be one of: local, s3, azure"
            ) from None

        return cls(
            backend=backend,
            local_base_path=os.getenv("LOCAL_BASE_PATH", "./data"),
            cache_dir=os.getenv("CACHE_DIR", tempfile.gettempdir()),
            cache_ttl_minutes=int(os.getenv("CACHE_TTL_MINUTES", "5")),
            timeout_seconds=float(os.getenv("STORAGE_TIMEOUT_SECONDS", "30")),
            shutdown_upload_timeout_seconds=float(
                os.getenv("SHUTDOWN_UPLOAD_TIMEOUT_SECONDS", "30")
            ),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the database blob.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        prefix: Key prefix in front of "<name>.sqlite"
        endpoint_url: Custom endpoint URL (for MinIO)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = ""
    region: str = "us-east-1"
    prefix: str = ""
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", ""),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            prefix=os.getenv("S3_PREFIX", ""),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class AzureConfig:
    """Azure Blob Storage configuration.

    Attributes:
        account: Storage account name
        container: Container holding database blobs
        key: Shared account key (ignored with managed identity)
        use_managed_identity: Authenticate with DefaultAzureCredential
        prefix: Blob name prefix
        endpoint_url: Custom blob endpoint (for Azurite)
    """

    account: str = ""
    container: str = ""
    key: str | None = None
    use_managed_identity: bool = False
    prefix: str = ""
    endpoint_url: str | None = None

    @classmethod
    def from_env(cls) -> AzureConfig:
        """Load configuration from environment variables."""
        return cls(
            account=os.getenv("AZURE_STORAGE_ACCOUNT", ""),
            container=os.getenv("AZURE_STORAGE_CONTAINER", ""),
            key=os.getenv("AZURE_STORAGE_KEY"),
            use_managed_identity=os.getenv("AZURE_USE_MANAGED_IDENTITY", "false").lower()
            == "true",
            prefix=os.getenv("AZURE_PREFIX", ""),
            endpoint_url=os.getenv("AZURE_ENDPOINT_URL"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        stale_transaction_seconds: Idle time after which an open transaction is reported
    """

    log_level: str = "INFO"
    log_format: str = "json"
    stale_transaction_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            stale_transaction_seconds=float(os.getenv("STALE_TRANSACTION_SECONDS", "300")),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        http: HTTP query surface configuration
        auth: Client authentication
        database: Embedded database configuration
        storage: Blob storage and working copy configuration
        s3: S3 configuration (if storage.backend is S3)
        azure: Azure configuration (if storage.backend is AZURE)
        observability: Observability configuration
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    s3: S3Config = field(default_factory=S3Config)
    azure: AzureConfig = field(default_factory=AzureConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            http=HttpConfig.from_env(),
            auth=AuthConfig.from_env(),
            database=DatabaseConfig.from_env(),
            storage=StorageConfig.from_env(),
            s3=S3Config.from_env(),
            azure=AzureConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.database.name:
            raise ValueError("DB_NAME must not be empty")
        if self.database.transaction_mode not in TRANSACTION_MODES:
            raise ValueError(
                f"Invalid TRANSACTION_MODE '{self.database.transaction_mode}'. "
                f"Must be one of: {', '.join(TRANSACTION_MODES)}"
            )
        if self.database.journal_mode not in JOURNAL_MODES:
            raise ValueError(
                f"Invalid SQLITE_JOURNAL_MODE '{self.database.journal_mode}'. "
                f"Must be one of: {', '.join(JOURNAL_MODES)}"
            )
        if self.database.connection_pool_size < 1:
            raise ValueError("CONNECTION_POOL_SIZE must be at least 1")
        if self.storage.cache_ttl_minutes < 1:
            raise ValueError("CACHE_TTL_MINUTES must be at least 1")

        # Validate backend specific config
        if self.storage.backend == StorageBackend.S3:
            if not self.s3.bucket:
                raise ValueError("S3_BUCKET is required when STORAGE=s3")
        elif self.storage.backend == StorageBackend.AZURE:
            if not self.azure.account:
                raise ValueError("AZURE_STORAGE_ACCOUNT is required when STORAGE=azure")
            if not self.azure.container:
                raise ValueError("AZURE_STORAGE_CONTAINER is required when STORAGE=azure")
            if not self.azure.use_managed_identity and not self.azure.key:
                raise ValueError(
                    "AZURE_STORAGE_KEY is required unless AZURE_USE_MANAGED_IDENTITY=true"
                )

        if self.auth.password == "postgres":
            logger.warning("Using default client password; set PG_PASSWORD in production")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "http_bind": f"{self.http.host}:{self.http.port}",
                "db_name": self.database.name,
                "transaction_mode": self.database.transaction_mode,
                "pool_size": self.database.connection_pool_size,
                "storage_backend": self.storage.backend.value,
                "local_base_path": self.storage.local_base_path
                if self.storage.backend == StorageBackend.LOCAL
                else None,
                "s3_bucket": self.s3.bucket if self.storage.backend == StorageBackend.S3 else None,
                "azure_container": self.azure.container
                if self.storage.backend == StorageBackend.AZURE
                else None,
                "cache_dir": self.storage.cache_dir,
                "cache_ttl_minutes": self.storage.cache_ttl_minutes,
                "log_level": self.observability.log_level,
            },
        )
