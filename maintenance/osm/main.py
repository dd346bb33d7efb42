"""
Command line entry point for object storage maintenance.

Usage:
    osm archive --src s3://logs/app/ --dst s3://cold/archive/ --compression best

Settings not given on the command line are read from the environment (see
config.py). Exit status is 0 when the archive was committed, 1 when the run
failed and 2 for invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone

import json_log_formatter

from ._version import __version__
from .archive.orchestrator import ArchiveOutcome, archive
from .config import COMPRESSION_ALGORITHMS, COMPRESSION_LEVELS, MaintenanceConfig
from .errors import ArchiverError
from .locations import DestinationLocation, SourceLocation

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def setup_logging(config: MaintenanceConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: Tool configuration
        verbose: Force DEBUG level
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)
    if verbose:
        level = logging.DEBUG

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


def parse_cutoff(value: str) -> datetime:
    """Parse an ISO 8601 cutoff; naive values are UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid ISO 8601 timestamp: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="osm",
        description="Object storage maintenance: archive and remove aging objects",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    archive_parser = subparsers.add_parser(
        "archive", help="Archive objects older than a cutoff into one compressed tar"
    )
    archive_parser.add_argument("--src", required=True, help="Source URL (s3://bucket/prefix)")
    archive_parser.add_argument(
        "--dst", required=True, help="Destination URL (s3://bucket/prefix)"
    )
    archive_parser.add_argument(
        "--cutoff",
        type=parse_cutoff,
        help="Archive objects modified before this instant (default: now minus 1s)",
    )
    archive_parser.add_argument(
        "--buffer", type=int, help="Upload part size in bytes (default: ARCHIVE_PART_SIZE)"
    )
    archive_parser.add_argument(
        "--compression", choices=COMPRESSION_LEVELS, help="Compression level"
    )
    archive_parser.add_argument(
        "--algorithm", choices=COMPRESSION_ALGORITHMS, help="Compression algorithm"
    )
    archive_parser.add_argument(
        "--keep-source", action="store_true", help="Don't delete archived objects"
    )
    archive_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    return parser


def archive_overrides(args: argparse.Namespace) -> dict[str, object]:
    """Archive settings given on the command line."""
    overrides: dict[str, object] = {}
    if args.buffer is not None:
        overrides["part_size"] = args.buffer
    if args.compression is not None:
        overrides["compression_level"] = args.compression
    if args.algorithm is not None:
        overrides["compression"] = args.algorithm
    if args.keep_source:
        overrides["delete_sources"] = False
    return overrides


def print_outcome(outcome: ArchiveOutcome, destination: DestinationLocation) -> None:
    if not outcome.success:
        print(f"Archive failed: {outcome.error}", file=sys.stderr)
        return

    print("Archive completed successfully")
    print(f"  Archive: s3://{destination.bucket}/{outcome.archive_key}")
    print(f"  Cutoff: {outcome.cutoff.isoformat()}")
    print(f"  Objects archived: {len(outcome.embedded_keys)}")
    if outcome.skipped_keys:
        print(f"  Objects skipped: {len(outcome.skipped_keys)}")
    print(f"  Archive size: {outcome.archive_bytes} bytes")
    if outcome.deletion is not None:
        print(f"  Objects deleted: {len(outcome.deletion.deleted)}")
        if not outcome.deletion.ok:
            failed = (
                len(outcome.deletion.failed)
                + len(outcome.deletion.dropped_keys)
                + sum(len(e.keys) for e in outcome.deletion.batch_errors)
            )
            print(f"  Objects not deleted: {failed}")
    print(f"  Duration: {outcome.duration_ms}ms")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        print("No command given. Run 'osm archive --help' to archive objects.")
        sys.exit(EXIT_OK)

    try:
        config = MaintenanceConfig.from_env().with_archive(**archive_overrides(args))
        SourceLocation.from_url(args.src)
        destination = DestinationLocation.from_url(args.dst)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)

    setup_logging(config, verbose=args.verbose)
    config.log_config()

    try:
        outcome = asyncio.run(archive(config, args.src, args.dst, cutoff=args.cutoff))
    except ArchiverError as e:
        logger.error(f"Archive run failed: {e}")
        print(f"Archive failed: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILED)

    print_outcome(outcome, destination)
    sys.exit(EXIT_OK if outcome.success else EXIT_FAILED)


if __name__ == "__main__":
    main()
