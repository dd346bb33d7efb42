"""
Source and destination locations.

Locations are given as `s3://bucket/optional-prefix` URLs. The URL is split
on the scheme separator and on the first path separator; the prefix is kept
verbatim (no normalization).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .errors import InvalidLocationError

SCHEME = "s3"

ARCHIVE_EXTENSIONS = {
    "gzip": ".tar.gz",
    "bz2": ".tar.bz2",
    "xz": ".tar.xz",
    "none": ".tar",
}


def parse_url(url: str) -> tuple[str, str | None]:
    """Split a location URL into bucket and prefix.

    Args:
        url: URL such as "s3://logs/audit/"

    Returns:
        (bucket, prefix) where prefix is None when absent or empty

    Raises:
        InvalidLocationError: If the scheme is not s3 or the bucket is missing
    """
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise InvalidLocationError(f"Invalid location URL (expected s3://bucket/prefix): {url}")
    if scheme != SCHEME:
        raise InvalidLocationError(f"Unsupported protocol: {scheme}")

    bucket, _, prefix = rest.partition("/")
    if not bucket:
        raise InvalidLocationError(f"Missing bucket in location URL: {url}")

    return bucket, prefix or None


@dataclass(frozen=True)
class SourceLocation:
    """Bucket and optional prefix to archive from."""

    bucket: str
    prefix: str | None = None

    @classmethod
    def from_url(cls, url: str) -> SourceLocation:
        bucket, prefix = parse_url(url)
        return cls(bucket=bucket, prefix=prefix)

    def __str__(self) -> str:
        return f"{SCHEME}://{self.bucket}/{self.prefix or ''}"


@dataclass(frozen=True)
class DestinationLocation:
    """Bucket and optional prefix the archive object is written under."""

    bucket: str
    prefix: str | None = None

    @classmethod
    def from_url(cls, url: str) -> DestinationLocation:
        bucket, prefix = parse_url(url)
        return cls(bucket=bucket, prefix=prefix)

    def archive_key(self, cutoff: datetime, compression: str = "gzip") -> str:
        """Derive the archive object key for a run.

        The file name embeds the cutoff so runs with different cutoffs never
        overwrite each other.

        Args:
            cutoff: Effective cutoff of the run
            compression: Compression algorithm, selects the file extension

        Returns:
            Object key such as "archive/archive_20240101_000000.tar.gz"
        """
        filename = f"archive_{cutoff.strftime('%Y%m%d_%H%M%S')}{ARCHIVE_EXTENSIONS[compression]}"
        if not self.prefix:
            return filename
        if self.prefix.endswith("/"):
            return f"{self.prefix}{filename}"
        return f"{self.prefix}/{filename}"

    def __str__(self) -> str:
        return f"{SCHEME}://{self.bucket}/{self.prefix or ''}"
