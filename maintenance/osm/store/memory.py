"""
In-memory object store implementation for testing.

This module provides a simple in-memory store for:
- Unit tests
- Integration tests
- Local development without MinIO or AWS

It follows S3 semantics closely enough to exercise the archive pipeline:
lexicographic listing with continuation tokens, multipart uploads with
store-assigned ETags and a minimum part size, and bulk deletes with per-key
errors.

Invariants:
    - All data is lost on process exit
    - Non-final parts smaller than min_part_size are rejected at completion,
      like S3's EntityTooSmall
    - Every call is recorded in `calls` for assertions

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with ObjectStore protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from ..errors import StoreError
from .base import DeleteFailure, DeleteResult, ListedObject, ListPage, UploadPart

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """An object held by the in-memory store."""

    data: bytes
    last_modified: datetime
    hide_size: bool = False
    hide_last_modified: bool = False

    @property
    def etag(self) -> str:
        return f'"{hashlib.md5(self.data).hexdigest()}"'


@dataclass
class PendingUpload:
    """A multipart upload in progress."""

    bucket: str
    key: str
    parts: dict[int, tuple[str, bytes]] = field(default_factory=dict)


@dataclass
class InjectedFailure:
    """A failure armed for a future call."""

    operation: str
    error: Exception
    key: str | None = None
    remaining: int = 1


class InMemoryObjectBody:
    """Body of an in-memory object, optionally failing mid-stream."""

    def __init__(self, key: str, data: bytes, fail_after: int | None = None) -> None:
        self.key = key
        self._data = data
        self._fail_after = fail_after
        self.closed = False

    async def chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        """Yield the object bytes in order."""
        offset = 0
        while offset < len(self._data):
            if self._fail_after is not None and offset >= self._fail_after:
                raise StoreError(f"Connection reset reading {self.key}", operation="GetObject.read")
            chunk = self._data[offset : offset + chunk_size]
            offset += len(chunk)
            await asyncio.sleep(0)
            yield chunk

    async def close(self) -> None:
        self.closed = True


class InMemoryObjectStore:
    """In-memory implementation of ObjectStore for testing.

    Attributes:
        page_size: Maximum entries per listing page
        min_part_size: Minimum size of every part except the last
        calls: Recorded (operation, details) tuples in call order

    Example:
        >>> store = InMemoryObjectStore(page_size=2)
        >>> store.add_object("logs", "audit/a.json", b"{}", last_modified=old)
        >>> page = await store.list_objects("logs", "audit/", None)
    """

    def __init__(self, page_size: int = 1000, min_part_size: int = 0) -> None:
        """Initialize in-memory store.

        Args:
            page_size: Entries per listing page
            min_part_size: Minimum non-final part size enforced on completion
        """
        self.page_size = page_size
        self.min_part_size = min_part_size
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._buckets: dict[str, dict[str, StoredObject]] = {}
        self._uploads: dict[str, PendingUpload] = {}
        self._failures: list[InjectedFailure] = []
        self._read_failures: dict[str, int] = {}
        self._delete_denied: dict[str, str] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryObjectStore connected")

    async def close(self) -> None:
        """Close (keeps data for post-run assertions)."""
        self._connected = False
        logger.debug("InMemoryObjectStore closed")

    def _record(self, operation: str, **details: Any) -> None:
        self.calls.append((operation, details))

    def _maybe_fail(self, operation: str, key: str | None = None) -> None:
        for failure in self._failures:
            if failure.operation != operation or failure.remaining <= 0:
                continue
            if failure.key is not None and failure.key != key:
                continue
            failure.remaining -= 1
            raise failure.error

    def _bucket(self, bucket: str, operation: str) -> dict[str, StoredObject]:
        if bucket not in self._buckets:
            raise StoreError(
                f"The specified bucket does not exist: {bucket}",
                code="NoSuchBucket",
                operation=operation,
            )
        return self._buckets[bucket]

    async def list_objects(
        self,
        bucket: str,
        prefix: str | None,
        continuation_token: str | None,
    ) -> ListPage:
        """List one page of keys in lexicographic order."""
        self._record("list_objects", bucket=bucket, prefix=prefix, token=continuation_token)
        self._maybe_fail("list_objects")
        objects = self._bucket(bucket, "ListObjectsV2")

        keys = sorted(k for k in objects if not prefix or k.startswith(prefix))
        if continuation_token:
            keys = [k for k in keys if k > continuation_token]

        page_keys = keys[: self.page_size]
        has_more = len(keys) > self.page_size

        entries = []
        for key in page_keys:
            obj = objects[key]
            entries.append(
                ListedObject(
                    key=key,
                    size=None if obj.hide_size else len(obj.data),
                    last_modified=None if obj.hide_last_modified else obj.last_modified,
                )
            )

        return ListPage(objects=entries, next_token=page_keys[-1] if has_more else None)

    async def get_object(self, bucket: str, key: str) -> InMemoryObjectBody:
        """Open a read of an object."""
        self._record("get_object", bucket=bucket, key=key)
        self._maybe_fail("get_object", key)
        objects = self._bucket(bucket, "GetObject")
        if key not in objects:
            raise StoreError(
                f"The specified key does not exist: {key}",
                code="NoSuchKey",
                operation="GetObject",
            )
        return InMemoryObjectBody(key, objects[key].data, self._read_failures.get(key))

    async def put_object(self, bucket: str, key: str, data: bytes) -> None:
        """Store a whole object."""
        self._record("put_object", bucket=bucket, key=key, size=len(data))
        self._maybe_fail("put_object", key)
        self._buckets.setdefault(bucket, {})[key] = StoredObject(
            data=bytes(data), last_modified=datetime.now(timezone.utc)
        )

    async def create_multipart_upload(self, bucket: str, key: str) -> str:
        """Start a multipart upload."""
        self._record("create_multipart_upload", bucket=bucket, key=key)
        self._maybe_fail("create_multipart_upload", key)
        upload_id = uuid.uuid4().hex
        self._uploads[upload_id] = PendingUpload(bucket=bucket, key=key)
        return upload_id

    async def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> str:
        """Store one part and return its ETag."""
        self._record(
            "upload_part",
            bucket=bucket,
            key=key,
            upload_id=upload_id,
            part_number=part_number,
            size=len(data),
        )
        self._maybe_fail("upload_part", key)
        upload = self._upload(upload_id, "UploadPart")
        etag = f'"{hashlib.md5(data).hexdigest()}"'
        upload.parts[part_number] = (etag, bytes(data))
        return etag

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: list[UploadPart],
    ) -> None:
        """Assemble the object from the listed parts."""
        self._record(
            "complete_multipart_upload",
            bucket=bucket,
            key=key,
            upload_id=upload_id,
            part_numbers=[p.part_number for p in parts],
        )
        self._maybe_fail("complete_multipart_upload", key)
        upload = self._upload(upload_id, "CompleteMultipartUpload")

        numbers = [p.part_number for p in parts]
        if not numbers or numbers != sorted(set(numbers)):
            raise StoreError(
                "The list of parts was not in ascending order",
                code="InvalidPartOrder",
                operation="CompleteMultipartUpload",
            )

        chunks = []
        for index, part in enumerate(parts):
            stored = upload.parts.get(part.part_number)
            if stored is None or stored[0] != part.etag:
                raise StoreError(
                    f"Part {part.part_number} could not be found",
                    code="InvalidPart",
                    operation="CompleteMultipartUpload",
                )
            if index < len(parts) - 1 and len(stored[1]) < self.min_part_size:
                raise StoreError(
                    "Your proposed upload is smaller than the minimum allowed size",
                    code="EntityTooSmall",
                    operation="CompleteMultipartUpload",
                )
            chunks.append(stored[1])

        del self._uploads[upload_id]
        self._buckets.setdefault(bucket, {})[key] = StoredObject(
            data=b"".join(chunks), last_modified=datetime.now(timezone.utc)
        )

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Discard a multipart upload."""
        self._record("abort_multipart_upload", bucket=bucket, key=key, upload_id=upload_id)
        self._maybe_fail("abort_multipart_upload", key)
        self._upload(upload_id, "AbortMultipartUpload")
        del self._uploads[upload_id]

    async def delete_objects(self, bucket: str, keys: list[str]) -> DeleteResult:
        """Delete keys, reporting denied keys as per-key errors."""
        self._record("delete_objects", bucket=bucket, keys=list(keys))
        self._maybe_fail("delete_objects")
        objects = self._bucket(bucket, "DeleteObjects")

        result = DeleteResult()
        for key in keys:
            if key in self._delete_denied:
                result.errors.append(
                    DeleteFailure(key=key, code=self._delete_denied[key], message="Access Denied")
                )
                continue
            # S3 reports missing keys as deleted
            objects.pop(key, None)
            result.deleted.append(key)
        return result

    def _upload(self, upload_id: str, operation: str) -> PendingUpload:
        if upload_id not in self._uploads:
            raise StoreError(
                f"The specified upload does not exist: {upload_id}",
                code="NoSuchUpload",
                operation=operation,
            )
        return self._uploads[upload_id]

    # Testing helpers

    def create_bucket(self, bucket: str) -> None:
        """Create an empty bucket (testing helper)."""
        self._buckets.setdefault(bucket, {})

    def add_object(
        self,
        bucket: str,
        key: str,
        data: bytes,
        last_modified: datetime | None = None,
        hide_size: bool = False,
        hide_last_modified: bool = False,
    ) -> None:
        """Seed an object with an explicit timestamp (testing helper).

        Args:
            bucket: Bucket name (created if missing)
            key: Object key
            data: Object bytes
            last_modified: Timestamp reported by listings (default: now)
            hide_size: Omit the size from listings
            hide_last_modified: Omit the timestamp from listings
        """
        self._buckets.setdefault(bucket, {})[key] = StoredObject(
            data=data,
            last_modified=last_modified or datetime.now(timezone.utc),
            hide_size=hide_size,
            hide_last_modified=hide_last_modified,
        )

    def get_data(self, bucket: str, key: str) -> bytes | None:
        """Return an object's bytes, or None (testing helper)."""
        obj = self._buckets.get(bucket, {}).get(key)
        return obj.data if obj else None

    def keys(self, bucket: str) -> list[str]:
        """Return all keys in a bucket, sorted (testing helper)."""
        return sorted(self._buckets.get(bucket, {}))

    def inject_failure(
        self,
        operation: str,
        error: Exception | None = None,
        key: str | None = None,
        times: int = 1,
    ) -> None:
        """Make the next `times` calls of an operation raise (testing helper).

        Args:
            operation: Method name, e.g. "upload_part"
            error: Exception to raise (default: StoreError "InternalError")
            key: Only fail calls for this key
            times: Number of calls to fail
        """
        self._failures.append(
            InjectedFailure(
                operation=operation,
                error=error
                or StoreError(
                    f"Injected {operation} failure", code="InternalError", operation=operation
                ),
                key=key,
                remaining=times,
            )
        )

    def fail_read_after(self, key: str, offset: int) -> None:
        """Make reads of a key fail once `offset` bytes were served (testing helper)."""
        self._read_failures[key] = offset

    def deny_delete(self, key: str, code: str = "AccessDenied") -> None:
        """Report a per-key error when deleting this key (testing helper)."""
        self._delete_denied[key] = code

    def calls_for(self, operation: str) -> list[dict[str, Any]]:
        """Return recorded call details for one operation (testing helper)."""
        return [details for op, details in self.calls if op == operation]

    @property
    def pending_uploads(self) -> int:
        """Number of multipart uploads neither completed nor aborted."""
        return len(self._uploads)
