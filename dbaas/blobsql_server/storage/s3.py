"""
S3-compatible blob store.

Stores each database as "s3://<bucket>/<prefix><name>.sqlite" using
aiobotocore. Works against AWS S3 and S3-compatible endpoints (MinIO,
LocalStack) via endpoint_url.

Invariants:
    - upload() is a single PutObject (S3 PUT is all-or-nothing)
    - NoSuchKey / 404 are reported as absent, never as errors
    - list() strips the configured prefix and the ".sqlite" suffix

How to change safely:
    - Test with MinIO or LocalStack before deploying to AWS
    - Multipart upload would need explicit abort-on-failure handling
"""

from __future__ import annotations

import asyncio
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

# Try to import aiobotocore for S3
try:
    from aiobotocore.session import get_session
    from botocore.exceptions import ClientError, EndpointConnectionError

    S3_AVAILABLE = True
except ImportError:
    S3_AVAILABLE = False
    get_session = None

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})


def is_not_found(error: Exception) -> bool:
    """Whether a botocore ClientError reports a missing object."""
    response = getattr(error, "response", None) or {}
    code = str(response.get("Error", {}).get("Code", ""))
    return code in NOT_FOUND_CODES


class S3BlobStore:
    """BlobStore backed by an S3 bucket.

    The client is created lazily on first use and shared by all
    operations until close().

    Attributes:
        config: S3Config instance
        bucket: Bucket name
        prefix: Key prefix prepended to every blob key

    Example:
        >>> store = S3BlobStore(S3Config(bucket="dbs", prefix="prod/"))
        >>> await store.upload("appdb", data)  # s3://dbs/prod/appdb.sqlite
    """

    def __init__(self, config: Any, client: Any = None) -> None:
        """Initialize the S3 store.

        Args:
            config: S3Config instance
            client: Pre-built S3 client (skips session creation)

        Raises:
            ImportError: If aiobotocore is not installed and no client is given
        """
        if client is None and not S3_AVAILABLE:
            raise ImportError(
                "aiobotocore is required for S3 backend. Install with: pip install aiobotocore"
            )

        self.config = config
        self.bucket = config.bucket
        self.prefix = config.prefix or ""
        self._client = client
        self._client_ctx = None
        self._owns_client = client is None
        self._init_lock = asyncio.Lock()

    async def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        async with self._init_lock:
            if self._client is None:
                session = get_session()
                client_kwargs: dict[str, Any] = {"region_name": self.config.region}
                if self.config.endpoint_url:
                    client_kwargs["endpoint_url"] = self.config.endpoint_url
                if self.config.access_key_id:
                    client_kwargs["aws_access_key_id"] = self.config.access_key_id
                    client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

                self._client_ctx = session.create_client("s3", **client_kwargs)
                self._client = await self._client_ctx.__aenter__()
                logger.info(
                    "S3 client initialized",
                    extra={"bucket": self.bucket, "region": self.config.region},
                )
        return self._client

    def _key(self, name: str) -> str:
        return blob_key(name, self.prefix)

    async def download(self, name: str, timeout: float | None = None) -> bytes | None:
        """Fetch an object body, or None if the key does not exist."""
        return await run_with_deadline("download", self._download(name), timeout)

    async def _download(self, name: str) -> bytes | None:
        client = await self._get_client()
        try:
            response = await client.get_object(Bucket=self.bucket, Key=self._key(name))
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as e:
            if is_not_found(e):
                return None
            raise StorageError(f"Failed to download {name} from S3: {e}") from e
        except EndpointConnectionError as e:
            raise StorageConnectionError(f"Cannot reach S3 endpoint: {e}") from e

    async def upload(self, name: str, data: bytes, timeout: float | None = None) -> None:
        """Put the object, overwriting any existing version."""
        await run_with_deadline("upload", self._upload(name, data), timeout)
        logger.debug(
            "Uploaded blob to S3",
            extra={"bucket": self.bucket, "key": self._key(name), "size_bytes": len(data)},
        )

    async def _upload(self, name: str, data: bytes) -> None:
        client = await self._get_client()
        try:
            await client.put_object(
                Bucket=self.bucket,
                Key=self._key(name),
                Body=data,
                ContentType="application/x-sqlite3",
            )
        except ClientError as e:
            raise StorageError(f"Failed to upload {name} to S3: {e}") from e
        except EndpointConnectionError as e:
            raise StorageConnectionError(f"Cannot reach S3 endpoint: {e}") from e

    async def list(self, timeout: float | None = None) -> list[str]:
        """List logical names under the configured prefix."""
        return await run_with_deadline("list", self._list(), timeout)

    async def _list(self) -> list[str]:
        client = await self._get_client()
        names = []
        try:
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                for obj in page.get("Contents", []):
                    name = logical_name(obj["Key"], self.prefix)
                    # Skip nested keys; they belong to deeper prefixes
                    if name and "/" not in name:
                        names.append(name)
        except ClientError as e:
            raise StorageError(f"Failed to list S3 objects: {e}") from e
        return names

    async def delete(self, name: str, timeout: float | None = None) -> None:
        """Delete the object; S3 treats missing keys as success."""
        await run_with_deadline("delete", self._delete(name), timeout)

    async def _delete(self, name: str) -> None:
        client = await self._get_client()
        try:
            await client.delete_object(Bucket=self.bucket, Key=self._key(name))
        except ClientError as e:
            if is_not_found(e):
                return
            raise StorageError(f"Failed to delete {name} from S3: {e}") from e

    async def exists(self, name: str, timeout: float | None = None) -> bool:
        """HEAD the object."""
        return await run_with_deadline("exists", self._exists(name), timeout)

    async def _exists(self, name: str) -> bool:
        client = await self._get_client()
        try:
            await client.head_object(Bucket=self.bucket, Key=self._key(name))
        except ClientError as e:
            if is_not_found(e):
                return False
            raise StorageError(f"Failed to stat {name} in S3: {e}") from e
        return True

    async def close(self) -> None:
        """Close the S3 client if this store created it."""
        if self._owns_client and self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client_ctx = None
            self._client = None
