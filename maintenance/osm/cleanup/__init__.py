"""
Cleanup module for the object storage archiver.

Deletes source objects once their bytes are committed to an archive.

Invariants:
    - Deletion is best-effort per batch and never rolled back
    - Only keys confirmed archived are passed in
"""

from .deleter import DeletionReport, delete_keys, key_encoding_problem

__all__ = ["delete_keys", "DeletionReport", "key_encoding_problem"]
