"""
S3 object store implementation.

Uses aiobotocore for async access to AWS S3 and S3-compatible stores
(MinIO, Ceph RGW, ...).

Invariants:
    - Transient failures are retried by botocore (bounded attempts with
      backoff) before they surface as StoreError
    - Every botocore/aiohttp failure is converted to StoreError carrying the
      S3 error code, so callers never depend on botocore exception types
    - Object bodies are streamed, never read whole

How to change safely:
    - Test against MinIO with path-style addressing before deploying
    - Keep retry policy at this boundary; the upload sink never retries
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timezone
from typing import Any, AsyncIterator

import aiohttp
from aiobotocore.config import AioConfig
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import StoreError
from .base import DeleteFailure, DeleteResult, ListedObject, ListPage, UploadPart

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (BotoCoreError, aiohttp.ClientError, asyncio.TimeoutError)


def _to_store_error(operation: str, error: Exception) -> StoreError:
    """Convert a client exception into StoreError."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code")
        return StoreError(f"{operation} failed: {error}", code=code, operation=operation)
    return StoreError(f"{operation} failed: {error}", operation=operation)


class S3ObjectBody:
    """Streaming body of an S3 GetObject response."""

    def __init__(self, key: str, body: Any) -> None:
        self.key = key
        self._body = body

    async def chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        """Yield the object bytes in order.

        Raises:
            StoreError: If the connection fails mid-body
        """
        while True:
            try:
                chunk = await self._body.read(chunk_size)
            except (ClientError, *_TRANSPORT_ERRORS) as e:
                raise _to_store_error("GetObject.read", e) from e
            if not chunk:
                return
            yield chunk

    async def close(self) -> None:
        """Release the HTTP connection."""
        self._body.close()


class S3ObjectStore:
    """S3 implementation of the ObjectStore protocol.

    Attributes:
        config: S3Config instance

    Example:
        >>> store = S3ObjectStore(S3Config(endpoint_url="http://minio:9000"))
        >>> await store.connect()
        >>> body = await store.get_object("logs", "audit/2023-12-31.json")
    """

    def __init__(self, config: Any) -> None:
        """Initialize the S3 store.

        Args:
            config: S3Config instance
        """
        self.config = config
        self._session = None
        self._client_ctx = None
        self._client = None

    @property
    def is_connected(self) -> bool:
        """Whether the client has been created."""
        return self._client is not None

    async def connect(self) -> None:
        """Create the aiobotocore client."""
        if self._client is not None:
            return

        self._session = get_session()

        client_kwargs: dict[str, Any] = {
            "region_name": self.config.region,
            "config": AioConfig(
                retries={
                    "max_attempts": self.config.max_attempts,
                    "mode": self.config.retry_mode,
                },
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                s3={"addressing_style": self.config.addressing_style},
            ),
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._client_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()
        logger.info(
            "Connected to object store",
            extra={
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        """Close the aiobotocore client."""
        if self._client is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing S3 client: {e}")
            self._client = None
            self._client_ctx = None

    async def _call(self, operation: str, method: str, **kwargs: Any) -> dict[str, Any]:
        """Invoke a client method, converting failures to StoreError."""
        if self._client is None:
            raise StoreError("Not connected to object store", operation=operation)

        try:
            return await getattr(self._client, method)(**kwargs)
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            raise _to_store_error(operation, e) from e

    async def list_objects(
        self,
        bucket: str,
        prefix: str | None,
        continuation_token: str | None,
    ) -> ListPage:
        """Fetch one ListObjectsV2 page."""
        kwargs: dict[str, Any] = {"Bucket": bucket}
        if prefix:
            kwargs["Prefix"] = prefix
        if continuation_token:
            kwargs["ContinuationToken"] = continuation_token

        response = await self._call("ListObjectsV2", "list_objects_v2", **kwargs)

        objects = []
        for obj in response.get("Contents", []):
            last_modified = obj.get("LastModified")
            if last_modified is not None and last_modified.tzinfo is None:
                last_modified = last_modified.replace(tzinfo=timezone.utc)
            objects.append(
                ListedObject(
                    key=obj["Key"],
                    size=obj.get("Size"),
                    last_modified=last_modified,
                )
            )

        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListPage(objects=objects, next_token=next_token)

    async def get_object(self, bucket: str, key: str) -> S3ObjectBody:
        """Open a streaming GetObject."""
        response = await self._call("GetObject", "get_object", Bucket=bucket, Key=key)
        return S3ObjectBody(key, response["Body"])

    async def put_object(self, bucket: str, key: str, data: bytes) -> None:
        """Write a whole object with PutObject."""
        await self._call("PutObject", "put_object", Bucket=bucket, Key=key, Body=data)

    async def create_multipart_upload(self, bucket: str, key: str) -> str:
        """Start a multipart upload."""
        response = await self._call(
            "CreateMultipartUpload", "create_multipart_upload", Bucket=bucket, Key=key
        )
        upload_id = response.get("UploadId")
        if not upload_id:
            raise StoreError("No upload ID received", operation="CreateMultipartUpload")
        return upload_id

    async def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> str:
        """Upload one part and return its ETag."""
        response = await self._call(
            "UploadPart",
            "upload_part",
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        etag = response.get("ETag")
        if not etag:
            raise StoreError("No ETag in upload part response", operation="UploadPart")
        return etag

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: list[UploadPart],
    ) -> None:
        """Commit a multipart upload."""
        await self._call(
            "CompleteMultipartUpload",
            "complete_multipart_upload",
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": [part.to_dict() for part in parts]},
        )

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload."""
        await self._call(
            "AbortMultipartUpload",
            "abort_multipart_upload",
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
        )

    async def delete_objects(self, bucket: str, keys: list[str]) -> DeleteResult:
        """Delete keys with one DeleteObjects request."""
        response = await self._call(
            "DeleteObjects",
            "delete_objects",
            Bucket=bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": False},
        )

        return DeleteResult(
            deleted=[obj["Key"] for obj in response.get("Deleted", [])],
            errors=[
                DeleteFailure(
                    key=err.get("Key", ""),
                    code=err.get("Code", "Unknown"),
                    message=err.get("Message", ""),
                )
                for err in response.get("Errors", [])
            ],
        )
