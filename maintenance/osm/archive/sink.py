"""
Multipart upload sink.

The sink is a sequential async byte sink that turns an arbitrary stream of
writes into one object in the store:

    write() -> buffer -> [create upload] -> upload part 1, 2, ... -> complete

Small outputs (never reaching one part) skip the multipart protocol and are
written with a single PutObject on close().

State machine:
    IDLE --(buffer >= part_size, no session)--> INITIATING_UPLOAD --> IDLE
    IDLE --(buffer >= part_size, session)-----> UPLOADING_PART -----> IDLE
    close(): drain parts, final part (any size), COMPLETING_UPLOAD --> COMPLETED
    any failure ----------------------------------------------------> FAILED

Invariants:
    - At most one store operation is in flight, held as an asyncio.Task
    - Part numbers start at 1 and increase by one per uploaded part
    - Bytes leave the buffer oldest first, so the object preserves write order
    - Only the final part may be smaller than part_size
    - Buffered bytes never exceed max_buffer_size; writes wait for the
      store instead
    - FAILED is terminal: every later call re-raises the same error without I/O

How to change safely:
    - Never retry inside the sink; retries belong to the store client
    - Keep close() the only path that sends a sub-threshold part
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable

from ..errors import UploadCompleteError, UploadError, UploadPartError, UploadSessionError
from ..store.base import ObjectStore, UploadPart

logger = logging.getLogger(__name__)

# S3 allows at most 10,000 parts per upload
MAX_PARTS = 10000


class SinkState(Enum):
    """Upload sink states."""

    IDLE = "idle"
    INITIATING_UPLOAD = "initiating_upload"
    UPLOADING_PART = "uploading_part"
    COMPLETING_UPLOAD = "completing_upload"
    COMPLETED = "completed"
    FAILED = "failed"


class MultipartUploadSink:
    """Streams written bytes into one store object.

    Attributes:
        bucket: Destination bucket
        key: Destination object key
        part_size: Multipart threshold and size of every non-final part
        max_buffer_size: Cap on buffered bytes while an operation is in flight

    Example:
        >>> sink = MultipartUploadSink(store, "archive", "logs.tar.gz", 8 * MIB)
        >>> await sink.write(chunk)
        >>> await sink.close()  # object is committed
    """

    def __init__(
        self,
        store: ObjectStore,
        bucket: str,
        key: str,
        part_size: int,
        max_buffer_size: int | None = None,
    ) -> None:
        """Initialize the sink.

        Args:
            store: Object store to upload to
            bucket: Destination bucket
            key: Destination object key
            part_size: Part size in bytes
            max_buffer_size: Buffer cap while uploading (default: 2 * part_size)

        Raises:
            ValueError: If part_size is not positive or the cap is below part_size
        """
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        if max_buffer_size is None:
            max_buffer_size = 2 * part_size
        if max_buffer_size < part_size:
            raise ValueError("max_buffer_size must not be smaller than part_size")

        self._store = store
        self.bucket = bucket
        self.key = key
        self.part_size = part_size
        self.max_buffer_size = max_buffer_size

        self._buffer = bytearray()
        self._state = SinkState.IDLE
        self._inflight: asyncio.Task[Any] | None = None
        self._inflight_part: tuple[int, int] | None = None
        self._error: UploadError | None = None
        self._upload_id: str | None = None
        self._next_part_number = 1
        self._parts: list[UploadPart] = []
        self._closed = False
        self._bytes_written = 0
        self._bytes_uploaded = 0

    @property
    def state(self) -> SinkState:
        return self._state

    @property
    def upload_id(self) -> str | None:
        return self._upload_id

    @property
    def parts(self) -> list[UploadPart]:
        """Parts acknowledged by the store, in part-number order."""
        return list(self._parts)

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def bytes_written(self) -> int:
        """Total bytes accepted by write()."""
        return self._bytes_written

    @property
    def bytes_uploaded(self) -> int:
        """Total bytes acknowledged by the store."""
        return self._bytes_uploaded

    @property
    def error(self) -> UploadError | None:
        return self._error

    def _raise_if_failed(self) -> None:
        if self._state is SinkState.FAILED:
            if self._error is None:
                self._error = UploadError(f"Upload of s3://{self.bucket}/{self.key} failed")
            raise self._error

    async def write(self, data: bytes) -> int:
        """Accept bytes into the sink.

        Starts uploads as the buffer crosses part_size. Data that does not fit
        under max_buffer_size is accepted in slices, waiting for the store to
        drain full parts between them.

        Args:
            data: Bytes to append

        Returns:
            Number of bytes accepted (always len(data))

        Raises:
            UploadError: If the sink has failed
            ValueError: If the sink is closed
        """
        self._raise_if_failed()
        if self._closed:
            raise ValueError("write to closed upload sink")
        if not data:
            return 0

        view = memoryview(data)
        offset = 0
        while offset < len(view):
            await self._advance(wait=False)
            # max_buffer_size >= part_size, so a full buffer always has a part to send
            while len(self._buffer) >= self.max_buffer_size:
                if self._inflight is None:
                    self._start_next()
                await self._settle()

            room = self.max_buffer_size - len(self._buffer)
            piece = view[offset : offset + room]
            self._buffer += piece
            self._bytes_written += len(piece)
            offset += len(piece)

        await self._advance(wait=False)
        return len(data)

    async def flush(self) -> None:
        """Wait for in-flight work and upload every full part.

        Never sends a part smaller than part_size; the remainder stays
        buffered until more data arrives or close() is called.

        Raises:
            UploadError: If the sink has failed
        """
        if self._state is SinkState.COMPLETED:
            return
        await self._advance(wait=True)

    async def close(self) -> None:
        """Commit the object.

        Uploads remaining data and completes the multipart upload, or writes
        the whole object with one PutObject if no upload was ever started.
        Closing a completed sink is a no-op.

        Raises:
            UploadError: If any step fails; the sink is then FAILED
        """
        if self._state is SinkState.COMPLETED:
            return
        self._raise_if_failed()
        self._closed = True

        await self._advance(wait=True)

        if self._upload_id is None:
            data = bytes(self._buffer)
            self._buffer.clear()
            self._begin(
                SinkState.COMPLETING_UPLOAD,
                self._store.put_object(self.bucket, self.key, data),
            )
            await self._settle()
            self._bytes_uploaded += len(data)
            mode = "single"
        else:
            while self._start_next(final=True):
                await self._settle()
            self._begin(
                SinkState.COMPLETING_UPLOAD,
                self._store.complete_multipart_upload(
                    self.bucket, self.key, self._upload_id, list(self._parts)
                ),
            )
            await self._settle()
            mode = "multipart"

        logger.info(
            "Upload committed",
            extra={
                "bucket": self.bucket,
                "key": self.key,
                "mode": mode,
                "parts": len(self._parts),
                "size_bytes": self._bytes_uploaded,
            },
        )

    async def abort(self) -> None:
        """Abandon the upload.

        Cancels any in-flight operation and aborts the multipart session so
        the store can discard uploaded parts. Abort failures are logged; the
        sink ends FAILED either way. A completed sink is left untouched.
        """
        if self._state is SinkState.COMPLETED:
            return

        task = self._inflight
        self._inflight = None
        if task is not None:
            task.cancel()
            await asyncio.wait([task])
            if not task.cancelled() and task.exception() is not None:
                logger.debug(f"Discarded in-flight upload result: {task.exception()}")

        if self._error is None:
            self._error = UploadError(f"Upload of s3://{self.bucket}/{self.key} was aborted")
        self._state = SinkState.FAILED
        self._buffer.clear()

        upload_id, self._upload_id = self._upload_id, None
        if upload_id is None:
            return

        try:
            await self._store.abort_multipart_upload(self.bucket, self.key, upload_id)
            logger.info(
                "Aborted multipart upload",
                extra={"bucket": self.bucket, "key": self.key, "upload_id": upload_id},
            )
        except Exception as e:
            logger.warning(
                f"Failed to abort multipart upload {upload_id}, "
                f"parts may need cleanup via a lifecycle rule: {e}"
            )

    async def _advance(self, wait: bool) -> None:
        """Make progress: settle finished work and start the next operation.

        Args:
            wait: Block until nothing is in flight and no full part is buffered
        """
        self._raise_if_failed()
        while True:
            if self._inflight is not None:
                if not wait and not self._inflight.done():
                    return
                await self._settle()
            if not self._start_next():
                return

    def _start_next(self, final: bool = False) -> bool:
        """Start the next store operation if one is due.

        Args:
            final: Allow a sub-threshold part (only from close())

        Returns:
            True if an operation was started
        """
        if self._state is not SinkState.IDLE or not self._buffer:
            return False
        if len(self._buffer) < self.part_size and not final:
            return False

        if self._upload_id is None:
            if final:
                return False
            logger.debug("Initiating multipart upload", extra={"key": self.key})
            self._begin(
                SinkState.INITIATING_UPLOAD,
                self._store.create_multipart_upload(self.bucket, self.key),
            )
            return True

        part_number = self._next_part_number
        if part_number > MAX_PARTS:
            raise self._fail(
                UploadPartError(
                    f"Upload of {self.key} exceeds {MAX_PARTS} parts; increase the part size",
                    part_number,
                )
            )

        size = min(len(self._buffer), self.part_size)
        chunk = bytes(self._buffer[:size])
        del self._buffer[:size]
        self._next_part_number += 1
        self._inflight_part = (part_number, size)

        self._begin(
            SinkState.UPLOADING_PART,
            self._store.upload_part(self.bucket, self.key, self._upload_id, part_number, chunk),
        )
        return True

    def _begin(self, state: SinkState, operation: Awaitable[Any]) -> None:
        self._state = state
        self._inflight = asyncio.ensure_future(operation)

    async def _settle(self) -> None:
        """Await the in-flight operation and apply its transition."""
        task = self._inflight
        if task is None:
            raise UploadError(f"No upload operation in flight for {self.key}")
        state = self._state

        try:
            result = await task
        except Exception as e:
            self._inflight = None
            raise self._fail(self._wrap_error(state, e)) from e
        self._inflight = None

        if state is SinkState.INITIATING_UPLOAD:
            self._upload_id = result
            self._state = SinkState.IDLE
            logger.info(
                "Started multipart upload",
                extra={"bucket": self.bucket, "key": self.key, "upload_id": result},
            )
        elif state is SinkState.UPLOADING_PART:
            if self._inflight_part is None:
                raise self._fail(UploadError(f"Part bookkeeping lost for {self.key}"))
            part_number, size = self._inflight_part
            self._inflight_part = None
            if not result:
                raise self._fail(
                    UploadPartError(f"No ETag in response for part {part_number}", part_number)
                )
            self._parts.append(UploadPart(part_number=part_number, etag=result))
            self._bytes_uploaded += size
            self._state = SinkState.IDLE
            logger.debug(
                "Uploaded part",
                extra={"key": self.key, "part_number": part_number, "size_bytes": size},
            )
        elif state is SinkState.COMPLETING_UPLOAD:
            self._state = SinkState.COMPLETED

    def _wrap_error(self, state: SinkState, error: Exception) -> UploadError:
        target = f"s3://{self.bucket}/{self.key}"
        if state is SinkState.INITIATING_UPLOAD:
            return UploadSessionError(f"Failed to init multipart upload for {target}: {error}")
        if state is SinkState.UPLOADING_PART:
            part_number = self._inflight_part[0] if self._inflight_part else self._next_part_number
            self._inflight_part = None
            return UploadPartError(
                f"Failed to upload part {part_number} of {target}: {error}", part_number
            )
        return UploadCompleteError(f"Failed to complete upload of {target}: {error}")

    def _fail(self, error: UploadError) -> UploadError:
        self._error = error
        self._state = SinkState.FAILED
        logger.error(f"Upload sink failed: {error}")
        return error
