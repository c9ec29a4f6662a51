"""
Azure Blob Storage blob store.

Stores each database as block blob "<prefix><name>.sqlite" in one
container, using the async azure-storage-blob client.

Invariants:
    - upload() uses upload_blob(overwrite=True); block blob commits are
      all-or-nothing
    - ResourceNotFoundError is reported as absent, never as an error
    - Authentication is either shared account key or managed identity

How to change safely:
    - Test against Azurite before deploying
    - Keep credential objects owned by the store so close() releases them
"""

from __future__ import annotations

import logging
from typing import Any

from .base import (
    StorageConnectionError,
    StorageError,
    blob_key,
    logical_name,
    run_with_deadline,
)

logger = logging.getLogger(__name__)

# Try to import the Azure SDK
try:
    from azure.core.exceptions import AzureError, ResourceNotFoundError, ServiceRequestError
    from azure.storage.blob.aio import BlobServiceClient

    AZURE_AVAILABLE = True
except ImportError:
    AZURE_AVAILABLE = False
    BlobServiceClient = None


def account_url(account: str, endpoint_url: str | None = None) -> str:
    """Blob service URL for an account."""
    if endpoint_url:
        return endpoint_url
    return f"https://{account}.blob.core.windows.net/"


class AzureBlobStore:
    """BlobStore backed by an Azure Blob Storage container.

    Attributes:
        config: AzureConfig instance
        container: Container name
        prefix: Blob name prefix

    Example:
        >>> store = AzureBlobStore(AzureConfig(account="acct", container="dbs", key="..."))
        >>> await store.upload("appdb", data)
    """

    def __init__(self, config: Any, service_client: Any = None) -> None:
        """Initialize the Azure store.

        Args:
            config: AzureConfig instance
            service_client: Pre-built BlobServiceClient (skips credential setup)

        Raises:
            ImportError: If azure-storage-blob is not installed and no client is given
        """
        if service_client is None and not AZURE_AVAILABLE:
            raise ImportError(
                "azure-storage-blob is required for Azure backend. "
                "Install with: pip install azure-storage-blob azure-identity"
            )

        self.config = config
        self.container = config.container
        self.prefix = config.prefix or ""
        self._credential = None
        self._owns_client = service_client is None

        if service_client is None:
            service_client = self._create_service_client()
        self._service = service_client
        self._container_client = service_client.get_container_client(self.container)

    def _create_service_client(self) -> Any:
        url = account_url(self.config.account, self.config.endpoint_url)
        if self.config.use_managed_identity:
            from azure.identity.aio import DefaultAzureCredential

            self._credential = DefaultAzureCredential()
            credential: Any = self._credential
        else:
            credential = {"account_name": self.config.account, "account_key": self.config.key}

        logger.info(
            "Azure blob client initialized",
            extra={
                "account": self.config.account,
                "container": self.container,
                "managed_identity": self.config.use_managed_identity,
            },
        )
        return BlobServiceClient(account_url=url, credential=credential)

    def _blob(self, name: str) -> Any:
        return self._container_client.get_blob_client(blob_key(name, self.prefix))

    async def download(self, name: str, timeout: float | None = None) -> bytes | None:
        """Download a blob, or None if it does not exist."""
        return await run_with_deadline("download", self._download(name), timeout)

    async def _download(self, name: str) -> bytes | None:
        try:
            stream = await self._blob(name).download_blob()
            return await stream.readall()
        except ResourceNotFoundError:
            return None
        except ServiceRequestError as e:
            raise StorageConnectionError(f"Cannot reach Azure blob service: {e}") from e
        except AzureError as e:
            raise StorageError(f"Failed to download {name} from Azure: {e}") from e

    async def upload(self, name: str, data: bytes, timeout: float | None = None) -> None:
        """Upload a block blob, overwriting any existing one."""
        await run_with_deadline("upload", self._upload(name, data), timeout)
        logger.debug(
            "Uploaded blob to Azure",
            extra={"container": self.container, "name": name, "size_bytes": len(data)},
        )

    async def _upload(self, name: str, data: bytes) -> None:
        try:
            await self._blob(name).upload_blob(data, overwrite=True)
        except ServiceRequestError as e:
            raise StorageConnectionError(f"Cannot reach Azure blob service: {e}") from e
        except AzureError as e:
            raise StorageError(f"Failed to upload {name} to Azure: {e}") from e

    async def list(self, timeout: float | None = None) -> list[str]:
        """List logical names in the container under the prefix."""
        return await run_with_deadline("list", self._list(), timeout)

    async def _list(self) -> list[str]:
        names = []
        try:
            async for blob in self._container_client.list_blobs(name_starts_with=self.prefix or None):
                name = logical_name(blob.name, self.prefix)
                if name:
                    names.append(name)
        except AzureError as e:
            raise StorageError(f"Failed to list Azure blobs: {e}") from e
        return names

    async def delete(self, name: str, timeout: float | None = None) -> None:
        """Delete a blob; missing blobs are ignored."""
        await run_with_deadline("delete", self._delete(name), timeout)

    async def _delete(self, name: str) -> None:
        try:
            await self._blob(name).delete_blob()
        except ResourceNotFoundError:
            return
        except AzureError as e:
            raise StorageError(f"Failed to delete {name} from Azure: {e}") from e

    async def exists(self, name: str, timeout: float | None = None) -> bool:
        """Whether the blob exists."""
        return await run_with_deadline("exists", self._exists(name), timeout)

    async def _exists(self, name: str) -> bool:
        try:
            return bool(await self._blob(name).exists())
        except AzureError as e:
            raise StorageError(f"Failed to stat {name} in Azure: {e}") from e

    async def close(self) -> None:
        """Close the service client and credential if owned."""
        if self._owns_client:
            await self._service.close()
        if self._credential is not None:
            await self._credential.close()
            self._credential = None
