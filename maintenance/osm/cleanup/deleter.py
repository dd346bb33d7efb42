"""
Batched deletion of archived source objects.

Keys are deleted with DeleteObjects in batches of at most 1000. Deletion is
best-effort per batch: a batch that fails, or keys the store refuses, are
reported and the remaining batches still run. Nothing is rolled back.

Invariants:
    - Only the keys passed in are ever deleted
    - Keys that cannot be carried by a DeleteObjects request are dropped
      from their own batch, never moved to another one
    - An empty batch is never sent

How to change safely:
    - The caller must only pass keys whose bytes are committed elsewhere
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from ..config import MAX_DELETE_BATCH
from ..errors import DeletionBatchError, StoreError
from ..locations import SourceLocation
from ..store.base import DeleteFailure, ObjectStore

logger = logging.getLogger(__name__)

MAX_KEY_BYTES = 1024

# Characters outside the XML 1.0 Char production cannot appear in the
# DeleteObjects request body
_XML_INVALID = re.compile("[^\t\n\r\x20-\uD7FF\uE000-\uFFFD\U00010000-\U0010FFFF]")


@dataclass
class DeletionReport:
    """Outcome of deleting a key list.

    Attributes:
        requested: Number of keys passed in
        deleted: Keys the store confirmed deleted
        failed: Per-key failures reported by the store
        dropped_keys: Keys that could not be encoded into a request
        batch_errors: Batches whose request failed outright
        batches_sent: Number of DeleteObjects requests issued
        batches_skipped: Batches skipped because no key was encodable
    """

    requested: int = 0
    deleted: list[str] = field(default_factory=list)
    failed: list[DeleteFailure] = field(default_factory=list)
    dropped_keys: list[str] = field(default_factory=list)
    batch_errors: list[DeletionBatchError] = field(default_factory=list)
    batches_sent: int = 0
    batches_skipped: int = 0

    @property
    def ok(self) -> bool:
        """Whether every requested key was deleted."""
        return not (self.failed or self.dropped_keys or self.batch_errors)

    def to_dict(self) -> dict[str, int]:
        return {
            "requested": self.requested,
            "deleted": len(self.deleted),
            "failed": len(self.failed),
            "dropped": len(self.dropped_keys),
            "batch_errors": len(self.batch_errors),
            "batches_sent": self.batches_sent,
            "batches_skipped": self.batches_skipped,
        }


def key_encoding_problem(key: str) -> str | None:
    """Return why a key cannot be sent in a DeleteObjects request, or None."""
    if not key:
        return "empty key"
    try:
        encoded = key.encode("utf-8")
    except UnicodeEncodeError as e:
        return f"not valid UTF-8 ({e.reason})"
    if len(encoded) > MAX_KEY_BYTES:
        return f"longer than {MAX_KEY_BYTES} bytes"
    if _XML_INVALID.search(key):
        return "contains characters not allowed in XML"
    return None


async def delete_keys(
    store: ObjectStore,
    location: SourceLocation,
    keys: list[str],
    batch_size: int = MAX_DELETE_BATCH,
) -> DeletionReport:
    """Delete keys from a bucket in bounded batches.

    Args:
        store: Object store
        location: Source location (only the bucket is used)
        keys: Keys to delete
        batch_size: Keys per request (1..1000)

    Returns:
        DeletionReport describing every batch
    """
    if not 1 <= batch_size <= MAX_DELETE_BATCH:
        raise ValueError(f"batch_size must be between 1 and {MAX_DELETE_BATCH}")

    report = DeletionReport(requested=len(keys))

    for batch_index, start in enumerate(range(0, len(keys), batch_size)):
        chunk = keys[start : start + batch_size]

        batch = []
        for key in chunk:
            problem = key_encoding_problem(key)
            if problem:
                logger.warning(f"Skipping key {key!r} in delete batch {batch_index}: {problem}")
                report.dropped_keys.append(key)
                continue
            batch.append(key)

        if not batch:
            logger.warning(f"No valid objects to delete in batch {batch_index}")
            report.batches_skipped += 1
            continue

        try:
            result = await store.delete_objects(location.bucket, batch)
        except StoreError as e:
            error = DeletionBatchError(
                f"Delete batch {batch_index} ({len(batch)} keys) failed: {e}",
                batch_index=batch_index,
                keys=batch,
            )
            logger.error(str(error))
            report.batch_errors.append(error)
            continue

        report.batches_sent += 1
        report.deleted.extend(result.deleted)
        report.failed.extend(result.errors)

        if result.deleted:
            logger.info(
                f"Deleted {len(result.deleted)} objects",
                extra={"bucket": location.bucket, "batch": batch_index},
            )
        for failure in result.errors:
            logger.error(
                f"Failed to delete {failure.key}: {failure.code} {failure.message}",
                extra={"bucket": location.bucket, "batch": batch_index},
            )

    return report
