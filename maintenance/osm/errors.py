"""
Error types for the object storage archiver.

Fatal vs recoverable:
    - ListingError, EncodingError, UploadError: the destination archive can no
      longer be trusted, the run is aborted and nothing is deleted
    - FetchError: a single object could not be read, it is skipped and never
      deleted
    - DeletionBatchError: one delete batch failed, other batches still run

Invariants:
    - All errors inherit from ArchiverError
    - Store failures are wrapped, never leaked as botocore exceptions
"""

from __future__ import annotations


class ArchiverError(Exception):
    """Base exception for archiver operations."""

    pass


class StoreError(ArchiverError):
    """An object store request failed.

    Attributes:
        code: Store error code (e.g. "NoSuchKey"), if the store returned one
        operation: Store operation that failed
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.operation = operation


class InvalidLocationError(ArchiverError, ValueError):
    """A source or destination URL could not be parsed."""

    pass


class ListingError(ArchiverError):
    """Listing the source location failed; the candidate set is unreliable."""

    pass


class ListingProtocolError(ListingError):
    """The store returned a listing entry without size or last-modified."""

    pass


class FetchError(ArchiverError):
    """Reading one source object failed."""

    def __init__(self, message: str, key: str) -> None:
        super().__init__(message)
        self.key = key


class EncodingError(ArchiverError):
    """The archive stream could not be encoded (size mismatch, truncated body)."""

    pass


class UploadError(ArchiverError):
    """Base error for the multipart upload sink."""

    pass


class UploadSessionError(UploadError):
    """Creating the multipart upload session failed."""

    pass


class UploadPartError(UploadError):
    """Uploading one part failed."""

    def __init__(self, message: str, part_number: int) -> None:
        super().__init__(message)
        self.part_number = part_number


class UploadCompleteError(UploadError):
    """Committing the object (complete upload or whole-object put) failed."""

    pass


class DeletionBatchError(ArchiverError):
    """Sending one delete batch failed.

    Attributes:
        batch_index: Zero-based index of the batch
        keys: Keys that were in the failed request
    """

    def __init__(self, message: str, batch_index: int, keys: list[str]) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.keys = keys
