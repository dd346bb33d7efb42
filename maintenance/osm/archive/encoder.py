"""
Streaming tar archive encoder.

The encoder writes a GNU tar stream through a compressor into an upload
sink, one entry per source object:

    header(name, size, mode, mtime, checksum) | object bytes | padding
    ...
    two zero blocks | padding to a full tar record | compressor trailer

Object bytes are compressed and handed to the sink as they are read; no
entry or archive is ever held in memory.

Invariants:
    - Each entry streams exactly its declared size, otherwise EncodingError
    - Once the header of an entry is emitted, any read failure is fatal: the
      stream can no longer be made into a valid archive
    - finish() is the only place the compressor trailer is written and the
      sink is closed

How to change safely:
    - The produced stream must stay readable with `tar -x` and tarfile
    - New compressors only need compress()/flush()
"""

from __future__ import annotations

import asyncio
import bz2
import logging
import lzma
import tarfile
import zlib
from datetime import datetime
from typing import AsyncIterable, Protocol

from ..errors import EncodingError, StoreError
from .sink import MultipartUploadSink

logger = logging.getLogger(__name__)

BLOCKSIZE = tarfile.BLOCKSIZE
RECORDSIZE = tarfile.RECORDSIZE
NUL = b"\0"

DEFAULT_ENTRY_MODE = 0o644

# Chunks at least this large are compressed off the event loop
OFFLOAD_THRESHOLD = 64 * 1024


class Compressor(Protocol):
    """Incremental compressor (zlib/bz2/lzma compressor objects fit)."""

    def compress(self, data: bytes) -> bytes: ...

    def flush(self) -> bytes: ...


class NullCompressor:
    """Pass-through compressor for uncompressed archives."""

    def compress(self, data: bytes) -> bytes:
        return data

    def flush(self) -> bytes:
        return b""


def make_compressor(algorithm: str = "gzip", level: str = "fastest") -> Compressor:
    """Create an incremental compressor.

    Args:
        algorithm: gzip, bz2, xz or none
        level: fastest or best

    Returns:
        A fresh compressor producing a complete stream in that format

    Raises:
        ValueError: If the algorithm or level is unknown
    """
    if level not in ("fastest", "best"):
        raise ValueError(f"Unknown compression level: {level}")
    best = level == "best"

    if algorithm == "gzip":
        # wbits 16 + MAX_WBITS selects the gzip container
        return zlib.compressobj(9 if best else 1, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
    if algorithm == "bz2":
        return bz2.BZ2Compressor(9 if best else 1)
    if algorithm == "xz":
        return lzma.LZMACompressor(format=lzma.FORMAT_XZ, preset=9 if best else 0)
    if algorithm == "none":
        return NullCompressor()
    raise ValueError(f"Unknown compression algorithm: {algorithm}")


class ArchiveEncoder:
    """Encodes source objects into a compressed tar stream.

    Attributes:
        sink: Upload sink receiving the compressed stream
        entry_mode: Permission bits written into every header
        entries: Number of complete entries written
        bytes_in: Uncompressed object bytes written

    Example:
        >>> encoder = ArchiveEncoder(sink, make_compressor("xz", "best"))
        >>> encoder.begin()
        >>> await encoder.append_entry("logs/a.json", 12, mtime, body.chunks(65536))
        >>> await encoder.finish()
    """

    def __init__(
        self,
        sink: MultipartUploadSink,
        compressor: Compressor,
        entry_mode: int = DEFAULT_ENTRY_MODE,
    ) -> None:
        self.sink = sink
        self.entry_mode = entry_mode
        self.entries = 0
        self.bytes_in = 0

        self._compressor = compressor
        self._offset = 0
        self._started = False
        self._finished = False
        self._broken = False

    def begin(self) -> ArchiveEncoder:
        """Start the archive stream.

        Returns:
            The encoder, ready for append_entry()
        """
        if self._started:
            raise EncodingError("Archive already started")
        self._started = True
        return self

    def _check_open(self) -> None:
        if not self._started:
            raise EncodingError("Archive not started; call begin() first")
        if self._finished:
            raise EncodingError("Archive already finished")
        if self._broken:
            raise EncodingError("Archive stream is broken by an earlier failure")

    def build_header(self, key: str, size: int, mtime: datetime) -> bytes:
        """Build the tar header block(s) for an entry.

        GNU format is used so keys longer than 100 bytes and sizes above
        8 GiB are represented without truncation.
        """
        info = tarfile.TarInfo(name=key)
        info.type = tarfile.REGTYPE
        info.size = size
        info.mode = self.entry_mode
        info.mtime = int(mtime.timestamp())
        try:
            return info.tobuf(tarfile.GNU_FORMAT, "utf-8", "surrogateescape")
        except ValueError as e:
            raise EncodingError(f"Cannot encode tar header for {key}: {e}") from e

    async def append_entry(
        self,
        key: str,
        size: int,
        mtime: datetime,
        chunks: AsyncIterable[bytes],
    ) -> None:
        """Stream one object into the archive.

        Args:
            key: Entry name (the source object key)
            size: Declared size; must equal the streamed byte count
            mtime: Entry modification time
            chunks: Object bytes, in order

        Raises:
            EncodingError: On size mismatch or a read failure mid-entry
            UploadError: If the sink fails
        """
        self._check_open()
        if size < 0:
            raise EncodingError(f"Negative size for {key}: {size}")

        try:
            await self._emit(self.build_header(key, size, mtime))

            written = 0
            try:
                async for chunk in chunks:
                    if written + len(chunk) > size:
                        raise EncodingError(
                            f"Entry {key} produced more than its declared {size} bytes"
                        )
                    await self._emit(chunk)
                    written += len(chunk)
            except StoreError as e:
                raise EncodingError(
                    f"Reading {key} failed after {written} of {size} bytes: {e}"
                ) from e

            if written != size:
                raise EncodingError(
                    f"Entry {key} ended after {written} bytes, declared size is {size}"
                )

            remainder = size % BLOCKSIZE
            if remainder:
                await self._emit(NUL * (BLOCKSIZE - remainder))
        except Exception:
            self._broken = True
            raise

        self.entries += 1
        self.bytes_in += size
        logger.debug("Archived entry", extra={"key": key, "size_bytes": size})

    async def finish(self) -> None:
        """Terminate the archive, flush the compressor and commit the upload.

        Raises:
            EncodingError: If the archive is not in a state that can be finished
            UploadError: If committing the upload fails
        """
        self._check_open()
        self._finished = True

        await self._emit(NUL * (BLOCKSIZE * 2))
        remainder = self._offset % RECORDSIZE
        if remainder:
            await self._emit(NUL * (RECORDSIZE - remainder))

        tail = self._compressor.flush()
        if tail:
            await self.sink.write(tail)

        await self.sink.close()
        logger.info(
            "Archive finished",
            extra={
                "key": self.sink.key,
                "entries": self.entries,
                "bytes_in": self.bytes_in,
                "bytes_out": self.sink.bytes_written,
            },
        )

    async def _emit(self, data: bytes) -> None:
        """Compress tar bytes and pass them to the sink."""
        self._offset += len(data)
        if len(data) >= OFFLOAD_THRESHOLD:
            loop = asyncio.get_running_loop()
            compressed = await loop.run_in_executor(None, self._compressor.compress, data)
        else:
            compressed = self._compressor.compress(data)
        if compressed:
            await self.sink.write(compressed)
