"""
Cutoff-filtered object enumeration.

Walks a source location page by page and yields the objects whose
last-modified time is strictly before the cutoff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Collection

from ..errors import ListingError, ListingProtocolError, StoreError
from ..locations import SourceLocation
from ..store.base import ObjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectDescriptor:
    """An object eligible for archiving.

    Attributes:
        key: Object key
        size: Size in bytes
        last_modified: Last-modified time (timezone-aware)
    """

    key: str
    size: int
    last_modified: datetime


def as_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def enumerate_objects(
    store: ObjectStore,
    location: SourceLocation,
    cutoff: datetime,
    exclude_keys: Collection[str] = (),
) -> AsyncIterator[ObjectDescriptor]:
    """Yield objects under a location that are older than the cutoff.

    Pages are fetched lazily as the caller consumes entries. The sequence is
    not restartable.

    Args:
        store: Object store
        location: Bucket and optional prefix to list
        cutoff: Objects with last_modified < cutoff are yielded
        exclude_keys: Keys never yielded (e.g. the archive being written)

    Yields:
        ObjectDescriptor for each eligible object, in listing order

    Raises:
        ListingError: If a page cannot be fetched
        ListingProtocolError: If a listed entry lacks size or last-modified
    """
    cutoff = as_utc(cutoff)
    token: str | None = None
    pages = 0
    listed = 0
    eligible = 0

    while True:
        try:
            page = await store.list_objects(location.bucket, location.prefix, token)
        except StoreError as e:
            logger.error(
                f"Failed to list objects: {e}",
                extra={"bucket": location.bucket, "prefix": location.prefix, "page": pages + 1},
            )
            raise ListingError(f"Failed to list {location} (page {pages + 1}): {e}") from e

        pages += 1
        for obj in page.objects:
            listed += 1
            if obj.size is None or obj.last_modified is None:
                missing = "size" if obj.size is None else "last_modified"
                raise ListingProtocolError(f"Listing entry {obj.key!r} has no {missing}")

            if as_utc(obj.last_modified) >= cutoff or obj.key in exclude_keys:
                continue

            eligible += 1
            yield ObjectDescriptor(
                key=obj.key,
                size=obj.size,
                last_modified=as_utc(obj.last_modified),
            )

        if page.next_token is None:
            break
        token = page.next_token

    logger.info(
        "Listing complete",
        extra={
            "bucket": location.bucket,
            "prefix": location.prefix,
            "pages": pages,
            "listed": listed,
            "eligible": eligible,
        },
    )
