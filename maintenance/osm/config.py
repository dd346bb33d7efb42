"""
Configuration management for the object storage archiver.

All configuration is done via environment variables, with the command line
overriding the archive settings of a single run. This module provides typed
configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Part sizes respect the S3 multipart limits (5 MiB .. 5 GiB)
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env variable names stable; they are used by deployment manifests
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

MIN_PART_SIZE = 5 * MIB
MAX_PART_SIZE = 5 * 1024 * MIB
MAX_DELETE_BATCH = 1000

COMPRESSION_ALGORITHMS = ("gzip", "bz2", "xz", "none")
COMPRESSION_LEVELS = ("fastest", "best")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class S3Config:
    """Object store connection configuration.

    Attributes:
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO and other S3-compatible stores)
        access_key_id: Access key ID (optional, uses AWS credential chain)
        secret_access_key: Secret access key (optional)
        max_attempts: Total attempts per request, including retries
        retry_mode: botocore retry mode (standard, adaptive, legacy)
        connect_timeout: Connection timeout in seconds
        read_timeout: Socket read timeout in seconds
        addressing_style: S3 addressing style (auto, path, virtual)
    """

    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    max_attempts: int = 5
    retry_mode: str = "standard"
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    addressing_style: str = "auto"

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("OBJECT_STORAGE_ENDPOINT", os.getenv("S3_ENDPOINT")),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID", os.getenv("AWS_ACCESS_KEY")),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY", os.getenv("AWS_SECRET_KEY")),
            max_attempts=int(os.getenv("S3_MAX_ATTEMPTS", "5")),
            retry_mode=os.getenv("S3_RETRY_MODE", "standard"),
            connect_timeout=float(os.getenv("S3_CONNECT_TIMEOUT", "10")),
            read_timeout=float(os.getenv("S3_READ_TIMEOUT", "60")),
            addressing_style=os.getenv("S3_ADDRESSING_STYLE", "auto"),
        )


@dataclass(frozen=True)
class ArchiveConfig:
    """Archive run configuration.

    Attributes:
        part_size: Multipart threshold and part size in bytes
        max_buffer_size: Cap on buffered bytes while an upload is in flight
            (None means twice the part size)
        compression: Compression algorithm (gzip, bz2, xz, none)
        compression_level: Compression level (fastest, best)
        cutoff_margin_seconds: Safety margin subtracted from now for the default cutoff
        read_chunk_size: Bytes requested per read of a source object
        delete_batch_size: Keys per DeleteObjects request
        delete_sources: Whether archived source objects are deleted
    """

    part_size: int = 100 * MIB
    max_buffer_size: int | None = None
    compression: str = "gzip"
    compression_level: str = "fastest"
    cutoff_margin_seconds: int = 1
    read_chunk_size: int = 1 * MIB
    delete_batch_size: int = MAX_DELETE_BATCH
    delete_sources: bool = True

    @classmethod
    def from_env(cls) -> ArchiveConfig:
        """Load configuration from environment variables."""
        max_buffer = os.getenv("ARCHIVE_MAX_BUFFER")
        return cls(
            part_size=int(os.getenv("ARCHIVE_PART_SIZE", str(100 * MIB))),
            max_buffer_size=int(max_buffer) if max_buffer else None,
            compression=os.getenv("ARCHIVE_COMPRESSION", "gzip").lower(),
            compression_level=os.getenv("ARCHIVE_COMPRESSION_LEVEL", "fastest").lower(),
            cutoff_margin_seconds=int(os.getenv("ARCHIVE_CUTOFF_MARGIN_SECONDS", "1")),
            read_chunk_size=int(os.getenv("ARCHIVE_READ_CHUNK_SIZE", str(1 * MIB))),
            delete_batch_size=int(
                os.getenv("ARCHIVE_DELETE_BATCH_SIZE", str(MAX_DELETE_BATCH))
            ),
            delete_sources=_env_bool("ARCHIVE_DELETE_SOURCES", "true"),
        )

    @property
    def effective_max_buffer_size(self) -> int:
        """Buffer cap used by the upload sink."""
        return self.max_buffer_size or 2 * self.part_size

    def validate(self) -> None:
        """Validate archive settings.

        Raises:
            ValueError: If a setting is out of range.
        """
        if not MIN_PART_SIZE <= self.part_size <= MAX_PART_SIZE:
            raise ValueError(
                f"Part size must be between {MIN_PART_SIZE} and {MAX_PART_SIZE} bytes, "
                f"got {self.part_size}"
            )
        if self.effective_max_buffer_size < self.part_size:
            raise ValueError("ARCHIVE_MAX_BUFFER must not be smaller than the part size")
        if self.compression not in COMPRESSION_ALGORITHMS:
            raise ValueError(
                f"Invalid compression '{self.compression}'. "
                f"Must be one of: {', '.join(COMPRESSION_ALGORITHMS)}"
            )
        if self.compression_level not in COMPRESSION_LEVELS:
            raise ValueError(
                f"Invalid compression level '{self.compression_level}'. "
                f"Must be one of: {', '.join(COMPRESSION_LEVELS)}"
            )
        if self.cutoff_margin_seconds < 1:
            raise ValueError("ARCHIVE_CUTOFF_MARGIN_SECONDS must be at least 1")
        if self.read_chunk_size <= 0:
            raise ValueError("ARCHIVE_READ_CHUNK_SIZE must be positive")
        if not 1 <= self.delete_batch_size <= MAX_DELETE_BATCH:
            raise ValueError(
                f"ARCHIVE_DELETE_BATCH_SIZE must be between 1 and {MAX_DELETE_BATCH}"
            )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass
class MaintenanceConfig:
    """Complete tool configuration.

    Attributes:
        s3: Object store configuration
        archive: Archive run configuration
        observability: Logging configuration
    """

    s3: S3Config = field(default_factory=S3Config)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> MaintenanceConfig:
        """Load complete configuration from environment variables.

        Returns:
            MaintenanceConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            s3=S3Config.from_env(),
            archive=ArchiveConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def with_archive(self, **changes: object) -> MaintenanceConfig:
        """Return a copy with archive settings overridden (e.g. from CLI flags)."""
        config = MaintenanceConfig(
            s3=self.s3,
            archive=replace(self.archive, **changes),
            observability=self.observability,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        self.archive.validate()

        if self.s3.max_attempts < 1:
            raise ValueError("S3_MAX_ATTEMPTS must be at least 1")
        if self.s3.access_key_id and not self.s3.secret_access_key:
            raise ValueError("AWS_SECRET_ACCESS_KEY is required when an access key is set")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Configuration loaded",
            extra={
                "s3_region": self.s3.region,
                "s3_endpoint": self.s3.endpoint_url or "AWS",
                "s3_credentials": "static" if self.s3.access_key_id else "default chain",
                "part_size": self.archive.part_size,
                "max_buffer_size": self.archive.effective_max_buffer_size,
                "compression": self.archive.compression,
                "compression_level": self.archive.compression_level,
                "delete_sources": self.archive.delete_sources,
                "log_level": self.observability.log_level,
            },
        )
