"""
Archive module for the object storage archiver.

This module moves aging objects into one compressed tar archive:
- Enumerator: cutoff-filtered, paginated listing
- Encoder: streaming tar + compression
- Sink: multipart upload state machine
- Orchestrator: drives one run and gates deletion on commit

Invariants:
    - The archive is never materialized in memory
    - Source objects are deleted only after the archive is committed
"""

from .encoder import ArchiveEncoder, Compressor, NullCompressor, make_compressor
from .enumerator import ObjectDescriptor, enumerate_objects
from .orchestrator import ArchiveOrchestrator, ArchiveOutcome, archive, default_cutoff
from .sink import MultipartUploadSink, SinkState

__all__ = [
    "ArchiveEncoder",
    "ArchiveOrchestrator",
    "ArchiveOutcome",
    "Compressor",
    "MultipartUploadSink",
    "NullCompressor",
    "ObjectDescriptor",
    "SinkState",
    "archive",
    "default_cutoff",
    "enumerate_objects",
    "make_compressor",
]
