"""
Object store abstraction for the archiver.

This module provides a pluggable store interface supporting:
- AWS S3 and S3-compatible stores such as MinIO (production)
- In-memory (for testing)

Invariants:
    - Store failures surface as StoreError
    - Multipart uploads follow S3 semantics (1-based part numbers, store ETags)

How to change safely:
    - New backends must implement the ObjectStore protocol
    - Verify new backends against the in-memory store's test suite
"""

from .base import (
    DeleteFailure,
    DeleteResult,
    ListedObject,
    ListPage,
    ObjectBody,
    ObjectStore,
    UploadPart,
    create_object_store,
)
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = [
    # Protocol and types
    "ObjectStore",
    "ObjectBody",
    "ListedObject",
    "ListPage",
    "UploadPart",
    "DeleteFailure",
    "DeleteResult",
    # Factory
    "create_object_store",
    # Implementations
    "S3ObjectStore",
    "InMemoryObjectStore",
]
