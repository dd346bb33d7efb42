"""
Object Storage Maintenance - archives aging objects out of S3 buckets.

One archive run finds objects older than a cutoff, streams them into a
single compressed tar archive written back to the store, and then deletes
the originals.

Architecture:
    ┌────────────┐    ┌────────────┐    ┌────────────┐    ┌────────────┐
    │ Enumerator │───▶│  Encoder   │───▶│ Compressor │───▶│ Upload Sink│───▶ S3
    │ (listing)  │    │   (tar)    │    │ (gz/bz2/xz)│    │ (multipart)│
    └────────────┘    └────────────┘    └────────────┘    └─────┬──────┘
                                                                │ committed
                                                                ▼
                                                         ┌────────────┐
                                                         │  Deleter   │───▶ S3
                                                         │ (batches)  │
                                                         └────────────┘

Invariants:
    - Memory use is bounded by the upload buffer, independent of archive size
    - Only keys actually written into a committed archive are deleted
    - Listing and upload failures abort the run with no deletions

How to change safely:
    - Keep the deletion gate in ArchiveOrchestrator.run()
    - Test against MinIO before changing store calls
"""

from ._version import __version__

__all__ = ["__version__"]
