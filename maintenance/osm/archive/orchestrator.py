"""
Archive orchestrator.

One archive run:
1. Compute the effective cutoff and the destination key
2. Enumerate eligible source objects (last_modified < cutoff)
3. Stream each object into the compressed tar archive
4. Commit the archive upload
5. Delete exactly the source keys that were embedded in the archive

Invariants:
    - Deletion happens only after the archive upload is committed
    - If listing, encoding or uploading fails, nothing is deleted and the
      multipart upload is aborted
    - Objects whose read could not be opened are skipped and never deleted
    - Deletion failures are reported but never fail a committed archive

How to change safely:
    - Never move delete_keys() before encoder.finish()
    - Test failure injection at every store call before changing the flow
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ..cleanup.deleter import DeletionReport, delete_keys
from ..config import ArchiveConfig, MaintenanceConfig
from ..errors import EncodingError, FetchError, ListingError, StoreError, UploadError
from ..locations import DestinationLocation, SourceLocation
from ..store.base import ObjectStore, create_object_store
from .encoder import ArchiveEncoder, make_compressor
from .enumerator import as_utc, enumerate_objects
from .sink import MultipartUploadSink

logger = logging.getLogger(__name__)


@dataclass
class ArchiveOutcome:
    """Result of an archive run.

    Attributes:
        success: Whether the archive was committed
        archive_key: Destination object key
        cutoff: Effective cutoff
        embedded_keys: Source keys written into the archive
        skipped_keys: Eligible keys whose read failed (kept in the source)
        deletion: Deletion report (None if deletion did not run)
        archive_bytes: Compressed size of the archive
        duration_ms: Total run duration
        error: Error message if the run failed
    """

    success: bool
    archive_key: str
    cutoff: datetime
    embedded_keys: list[str] = field(default_factory=list)
    skipped_keys: list[str] = field(default_factory=list)
    deletion: DeletionReport | None = None
    archive_bytes: int = 0
    duration_ms: int = 0
    error: str | None = None


def default_cutoff(margin_seconds: int = 1, now: datetime | None = None) -> datetime:
    """Now minus a safety margin, so objects still being written are left alone."""
    now = now or datetime.now(timezone.utc)
    return now - timedelta(seconds=max(margin_seconds, 1))


class ArchiveOrchestrator:
    """Runs archive passes against one object store.

    Attributes:
        store: Object store (shared by listing, reads, upload and deletion)
        config: Archive configuration

    Example:
        >>> orchestrator = ArchiveOrchestrator(store, config.archive)
        >>> outcome = await orchestrator.run(source, destination)
        >>> print(f"Archived {len(outcome.embedded_keys)} objects")
    """

    def __init__(self, store: ObjectStore, config: ArchiveConfig | None = None) -> None:
        self.store = store
        self.config = config or ArchiveConfig()

    async def run(
        self,
        source: SourceLocation,
        destination: DestinationLocation,
        cutoff: datetime | None = None,
        part_size: int | None = None,
    ) -> ArchiveOutcome:
        """Archive and remove source objects older than the cutoff.

        Args:
            source: Location to archive from
            destination: Location to write the archive under
            cutoff: Objects modified before this instant are archived
                (default: now minus the configured margin)
            part_size: Override of the configured part size

        Returns:
            ArchiveOutcome describing the run
        """
        start_time = time.time()
        cutoff = as_utc(cutoff) if cutoff else default_cutoff(self.config.cutoff_margin_seconds)
        part_size = part_size or self.config.part_size
        archive_key = destination.archive_key(cutoff, self.config.compression)

        outcome = ArchiveOutcome(success=False, archive_key=archive_key, cutoff=cutoff)

        logger.info(
            "Starting archive run",
            extra={
                "source": str(source),
                "destination": f"s3://{destination.bucket}/{archive_key}",
                "cutoff": cutoff.isoformat(),
                "part_size": part_size,
            },
        )

        sink = MultipartUploadSink(
            self.store,
            destination.bucket,
            archive_key,
            part_size=part_size,
            max_buffer_size=max(self.config.effective_max_buffer_size, part_size),
        )
        encoder = ArchiveEncoder(
            sink, make_compressor(self.config.compression, self.config.compression_level)
        )

        exclude = {archive_key} if destination.bucket == source.bucket else set()

        try:
            encoder.begin()
            async for obj in enumerate_objects(self.store, source, cutoff, exclude_keys=exclude):
                try:
                    body = await self.store.get_object(source.bucket, obj.key)
                except StoreError as e:
                    error = FetchError(f"Failed to fetch object '{obj.key}': {e}", key=obj.key)
                    logger.warning(
                        f"{error}, skipping",
                        extra={"bucket": source.bucket, "key": obj.key},
                    )
                    outcome.skipped_keys.append(obj.key)
                    continue

                try:
                    await encoder.append_entry(
                        obj.key,
                        obj.size,
                        obj.last_modified,
                        body.chunks(self.config.read_chunk_size),
                    )
                finally:
                    await body.close()

                outcome.embedded_keys.append(obj.key)

            await encoder.finish()

        except (ListingError, EncodingError, UploadError) as e:
            logger.error(f"Archive run failed, no objects will be deleted: {e}")
            await sink.abort()
            outcome.error = str(e)
            outcome.duration_ms = int((time.time() - start_time) * 1000)
            return outcome
        except asyncio.CancelledError:
            logger.warning("Archive run cancelled, aborting upload")
            await sink.abort()
            raise
        except Exception as e:
            logger.error(f"Unexpected error during archive run: {e}", exc_info=True)
            await sink.abort()
            raise

        outcome.success = True
        outcome.archive_bytes = sink.bytes_uploaded
        logger.info(
            "Archive committed",
            extra={
                "key": archive_key,
                "objects": len(outcome.embedded_keys),
                "skipped": len(outcome.skipped_keys),
                "size_bytes": sink.bytes_uploaded,
            },
        )

        if self.config.delete_sources and outcome.embedded_keys:
            outcome.deletion = await delete_keys(
                self.store,
                source,
                outcome.embedded_keys,
                batch_size=self.config.delete_batch_size,
            )
            if not outcome.deletion.ok:
                logger.warning(
                    "Some archived objects could not be deleted",
                    extra=outcome.deletion.to_dict(),
                )

        outcome.duration_ms = int((time.time() - start_time) * 1000)
        return outcome


async def archive(
    config: MaintenanceConfig,
    source_url: str,
    destination_url: str,
    cutoff: datetime | None = None,
    store: ObjectStore | None = None,
) -> ArchiveOutcome:
    """Run one archive pass from URLs.

    Args:
        config: Tool configuration
        source_url: s3://bucket/optional-prefix to archive from
        destination_url: s3://bucket/optional-prefix to write the archive under
        cutoff: Optional explicit cutoff
        store: Store to use (default: the configured S3 store)

    Returns:
        ArchiveOutcome describing the run

    Raises:
        InvalidLocationError: If a URL is invalid
        StoreError: If the store client cannot be created
    """
    source = SourceLocation.from_url(source_url)
    destination = DestinationLocation.from_url(destination_url)

    store = store or create_object_store(config)
    await store.connect()
    try:
        orchestrator = ArchiveOrchestrator(store, config.archive)
        return await orchestrator.run(source, destination, cutoff=cutoff)
    finally:
        await store.close()
