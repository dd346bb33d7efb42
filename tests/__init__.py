"""
Object Storage Maintenance Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies, stubbed S3 client)
- integration/: Integration tests (full archive runs on the in-memory store)
"""
