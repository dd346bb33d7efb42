"""
Unit tests for the command line entry point.
"""

import argparse
import logging
from datetime import datetime, timedelta, timezone

import json_log_formatter
import pytest

from maintenance.osm import main as cli
from maintenance.osm.archive.orchestrator import ArchiveOutcome
from maintenance.osm.config import MIB, MaintenanceConfig, ObservabilityConfig
from maintenance.osm.errors import ListingError


class TestParseCutoff:
    """Tests for --cutoff parsing."""

    def test_zulu(self):
        assert cli.parse_cutoff("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert cli.parse_cutoff("2024-01-01T00:00:00").tzinfo == timezone.utc

    def test_offset_kept(self):
        parsed = cli.parse_cutoff("2024-01-01T02:00:00+02:00")
        assert parsed.utcoffset() == timedelta(hours=2)

    def test_invalid(self):
        with pytest.raises(argparse.ArgumentTypeError):
            cli.parse_cutoff("yesterday")


class TestParser:
    """Tests for argument parsing and overrides."""

    def test_archive_arguments(self):
        args = cli.build_parser().parse_args(
            [
                "archive",
                "--src",
                "s3://logs/audit/",
                "--dst",
                "s3://cold/",
                "--buffer",
                str(8 * MIB),
                "--compression",
                "best",
                "--algorithm",
                "xz",
                "--keep-source",
            ]
        )

        assert args.command == "archive"
        assert cli.archive_overrides(args) == {
            "part_size": 8 * MIB,
            "compression_level": "best",
            "compression": "xz",
            "delete_sources": False,
        }

    def test_no_overrides(self):
        args = cli.build_parser().parse_args(["archive", "--src", "s3://a", "--dst", "s3://b"])

        assert cli.archive_overrides(args) == {}
        assert args.cutoff is None

    def test_rejects_unknown_level(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(
                ["archive", "--src", "s3://a", "--dst", "s3://b", "--compression", "medium"]
            )


class TestMain:
    """Tests for exit codes."""

    def test_no_command_exits_zero(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])

        assert exc_info.value.code == cli.EXIT_OK
        assert "osm archive" in capsys.readouterr().out

    def test_invalid_url_is_config_error(self, monkeypatch):
        monkeypatch.delenv("AWS_ACCESS_KEY_ID", raising=False)
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["archive", "--src", "gs://logs", "--dst", "s3://cold"])

        assert exc_info.value.code == cli.EXIT_CONFIG

    def test_invalid_buffer_is_config_error(self, monkeypatch):
        monkeypatch.delenv("AWS_ACCESS_KEY_ID", raising=False)
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["archive", "--src", "s3://logs", "--dst", "s3://cold", "--buffer", "10"])

        assert exc_info.value.code == cli.EXIT_CONFIG

    @pytest.mark.parametrize("success,code", [(True, 0), (False, 1)])
    def test_exit_code_follows_outcome(self, monkeypatch, capsys, success, code):
        monkeypatch.delenv("AWS_ACCESS_KEY_ID", raising=False)
        outcome = ArchiveOutcome(
            success=success,
            archive_key="archive_20240101_000000.tar.gz",
            cutoff=datetime(2024, 1, 1, tzinfo=timezone.utc),
            embedded_keys=["a"],
            error=None if success else "Injected failure",
        )

        async def fake_archive(config, src, dst, cutoff=None):
            return outcome

        monkeypatch.setattr(cli, "archive", fake_archive)
        monkeypatch.setattr(cli, "setup_logging", lambda config, verbose=False: None)

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["archive", "--src", "s3://logs", "--dst", "s3://cold"])

        assert exc_info.value.code == code
        out = capsys.readouterr().out
        assert ("completed successfully" in out) is success

    def test_failed_outcome_reported_on_stderr(self, monkeypatch, capsys):
        monkeypatch.delenv("AWS_ACCESS_KEY_ID", raising=False)
        outcome = ArchiveOutcome(
            success=False,
            archive_key="archive_20240101_000000.tar.gz",
            cutoff=datetime(2024, 1, 1, tzinfo=timezone.utc),
            error="Injected failure",
        )

        async def fake_archive(config, src, dst, cutoff=None):
            return outcome

        monkeypatch.setattr(cli, "archive", fake_archive)
        monkeypatch.setattr(cli, "setup_logging", lambda config, verbose=False: None)

        with pytest.raises(SystemExit):
            cli.main(["archive", "--src", "s3://logs", "--dst", "s3://cold"])

        captured = capsys.readouterr()
        assert "Archive failed: Injected failure" in captured.err
        assert "Archive failed" not in captured.out

    def test_raised_error_reported_on_stderr(self, monkeypatch, capsys):
        monkeypatch.delenv("AWS_ACCESS_KEY_ID", raising=False)

        async def fake_archive(config, src, dst, cutoff=None):
            raise ListingError("Bucket logs does not exist")

        monkeypatch.setattr(cli, "archive", fake_archive)
        monkeypatch.setattr(cli, "setup_logging", lambda config, verbose=False: None)

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["archive", "--src", "s3://logs", "--dst", "s3://cold"])

        assert exc_info.value.code == cli.EXIT_FAILED
        captured = capsys.readouterr()
        assert "Archive failed: Bucket logs does not exist" in captured.err
        assert captured.out == ""


class TestSetupLogging:
    """Tests for setup_logging()."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        config = MaintenanceConfig(observability=ObservabilityConfig(log_format="json"))

        cli.setup_logging(config)

        root = logging.getLogger()
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_verbose_forces_debug(self):
        cli.setup_logging(MaintenanceConfig(), verbose=True)

        assert logging.getLogger().level == logging.DEBUG
