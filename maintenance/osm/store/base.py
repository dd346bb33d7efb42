"""
Base protocol and types for the object store abstraction.

This module defines the ObjectStore protocol that all store backends must
implement, along with the listing, body and upload types shared by the
archive pipeline.

Invariants:
    - Every failure surfaces as StoreError (or a subclass)
    - Listing entries are passed through unvalidated; the enumerator decides
      whether a missing size or timestamp is acceptable
    - ETags are assigned by the store, callers never fabricate them

How to change safely:
    - Protocol changes require updating S3ObjectStore and InMemoryObjectStore
    - Keep method names aligned with the S3 API they wrap
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import MaintenanceConfig


@dataclass(frozen=True)
class ListedObject:
    """One raw entry of a listing page, as returned by the store."""

    key: str
    size: int | None
    last_modified: datetime | None


@dataclass
class ListPage:
    """One page of listing results.

    Attributes:
        objects: Entries in listing order
        next_token: Continuation token, None when this is the last page
    """

    objects: list[ListedObject] = field(default_factory=list)
    next_token: str | None = None


@dataclass(frozen=True)
class UploadPart:
    """A part acknowledged by the store during a multipart upload."""

    part_number: int
    etag: str

    def to_dict(self) -> dict[str, object]:
        """Convert to the S3 CompletedPart shape."""
        return {"PartNumber": self.part_number, "ETag": self.etag}


@dataclass(frozen=True)
class DeleteFailure:
    """A key the store refused to delete."""

    key: str
    code: str
    message: str


@dataclass
class DeleteResult:
    """Result of one bulk delete request."""

    deleted: list[str] = field(default_factory=list)
    errors: list[DeleteFailure] = field(default_factory=list)


@runtime_checkable
class ObjectBody(Protocol):
    """Streaming body of a fetched object."""

    def chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        """Yield the object bytes in order, at most chunk_size at a time."""
        ...

    async def close(self) -> None:
        """Release the underlying connection."""
        ...


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for bucket-style object stores.

    The archive pipeline only needs this narrow surface: paginated listing,
    streaming reads, whole-object writes, the multipart upload protocol and
    bulk deletes.

    Example:
        >>> store = S3ObjectStore(config.s3)
        >>> await store.connect()
        >>> page = await store.list_objects("logs", "audit/", None)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the client. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release client resources."""
        ...

    @abstractmethod
    async def list_objects(
        self,
        bucket: str,
        prefix: str | None,
        continuation_token: str | None,
    ) -> ListPage:
        """Fetch one listing page.

        Raises:
            StoreError: If the page could not be fetched
        """
        ...

    @abstractmethod
    async def get_object(self, bucket: str, key: str) -> ObjectBody:
        """Open a streaming read of an object.

        Raises:
            StoreError: If the object could not be opened
        """
        ...

    @abstractmethod
    async def put_object(self, bucket: str, key: str, data: bytes) -> None:
        """Write a whole object in one request."""
        ...

    @abstractmethod
    async def create_multipart_upload(self, bucket: str, key: str) -> str:
        """Start a multipart upload and return its upload id."""
        ...

    @abstractmethod
    async def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> str:
        """Upload one part and return the store-assigned ETag."""
        ...

    @abstractmethod
    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: list[UploadPart],
    ) -> None:
        """Commit a multipart upload from its ordered parts."""
        ...

    @abstractmethod
    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Discard a multipart upload and its uploaded parts."""
        ...

    @abstractmethod
    async def delete_objects(self, bucket: str, keys: list[str]) -> DeleteResult:
        """Delete up to 1000 keys in one request.

        Per-key failures are reported in the result, not raised.

        Raises:
            StoreError: If the request itself failed
        """
        ...


def create_object_store(config: "MaintenanceConfig") -> ObjectStore:
    """Factory function to create the configured object store.

    Args:
        config: Maintenance configuration

    Returns:
        S3ObjectStore bound to the configured endpoint
    """
    from .s3 import S3ObjectStore

    return S3ObjectStore(config.s3)
