"""
Integration tests for full archive runs.

These tests drive ArchiveOrchestrator end to end against the in-memory
store: listing, streaming into a compressed tar, the multipart upload and
the deletion of archived sources.
"""

import asyncio
import io
import tarfile
from datetime import datetime, timedelta, timezone

import pytest

from maintenance.osm.archive.orchestrator import ArchiveOrchestrator, archive, default_cutoff
from maintenance.osm.config import ArchiveConfig, MaintenanceConfig
from maintenance.osm.errors import InvalidLocationError
from maintenance.osm.locations import DestinationLocation, SourceLocation
from maintenance.osm.store.memory import InMemoryObjectStore

CUTOFF = datetime(2024, 1, 1, tzinfo=timezone.utc)
JUST_BEFORE = datetime(2023, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
JUST_AFTER = datetime(2024, 1, 1, 0, 0, 1, tzinfo=timezone.utc)
OLD = datetime(2023, 6, 1, tzinfo=timezone.utc)
SOURCE = SourceLocation("logs", "audit/")
DESTINATION = DestinationLocation("cold", "archives/")
ARCHIVE_KEY = "archives/archive_20240101_000000.tar.gz"


class StalledPartStore(InMemoryObjectStore):
    """Store whose part uploads never finish."""

    def __init__(self):
        super().__init__()
        self.part_started = asyncio.Event()

    async def upload_part(self, bucket, key, upload_id, part_number, data):
        self.part_started.set()
        await asyncio.Event().wait()


def read_archive(store, key=ARCHIVE_KEY, bucket="cold"):
    data = store.get_data(bucket, key)
    assert data is not None, f"archive {key} was not written"
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        return {m.name: tar.extractfile(m).read() for m in tar.getmembers()}


@pytest.fixture
def store():
    store = InMemoryObjectStore(page_size=2)
    store.create_bucket("cold")
    store.add_object("logs", "audit/a", b"alpha", last_modified=JUST_BEFORE)
    store.add_object("logs", "audit/b", b"bravo", last_modified=JUST_AFTER)
    store.add_object("logs", "audit/c", b"charlie", last_modified=OLD)
    store.add_object("logs", "other/d", b"delta", last_modified=OLD)
    return store


@pytest.fixture
def config():
    return ArchiveConfig()


class TestSuccessfulRun:
    """Tests for runs where the archive is committed."""

    @pytest.mark.asyncio
    async def test_archives_and_deletes_eligible_objects(self, store, config):
        """Only objects older than the cutoff are archived and then deleted."""
        outcome = await ArchiveOrchestrator(store, config).run(SOURCE, DESTINATION, cutoff=CUTOFF)

        assert outcome.success
        assert outcome.archive_key == ARCHIVE_KEY
        assert outcome.embedded_keys == ["audit/a", "audit/c"]
        assert read_archive(store) == {"audit/a": b"alpha", "audit/c": b"charlie"}

        deletes = store.calls_for("delete_objects")
        assert len(deletes) == 1
        assert deletes[0]["keys"] == ["audit/a", "audit/c"]
        assert store.keys("logs") == ["audit/b", "other/d"]

        assert outcome.deletion.ok
        assert outcome.archive_bytes == len(store.get_data("cold", ARCHIVE_KEY))

    @pytest.mark.asyncio
    async def test_deleted_set_equals_embedded_set(self, store, config):
        outcome = await ArchiveOrchestrator(store, config).run(
            SourceLocation("logs"), DESTINATION, cutoff=CUTOFF
        )

        deleted = [k for call in store.calls_for("delete_objects") for k in call["keys"]]
        assert set(deleted) == set(outcome.embedded_keys) == set(read_archive(store))

    @pytest.mark.asyncio
    async def test_multipart_archive(self, config):
        """Archives larger than a part go through the multipart protocol."""
        store = InMemoryObjectStore(min_part_size=64 * 1024)
        store.create_bucket("cold")
        payloads = {
            f"audit/{i}": bytes([i]) * (50 * 1024) + bytes(range(256)) * 40 for i in range(8)
        }
        for key, data in payloads.items():
            store.add_object("logs", key, data, last_modified=OLD)

        archive_config = ArchiveConfig(compression="none", read_chunk_size=16 * 1024)
        outcome = await ArchiveOrchestrator(store, archive_config).run(
            SOURCE, DESTINATION, cutoff=CUTOFF, part_size=64 * 1024
        )

        assert outcome.success
        assert len(store.calls_for("upload_part")) > 1
        assert store.pending_uploads == 0
        key = "archives/archive_20240101_000000.tar"
        assert read_archive(store, key) == payloads

    @pytest.mark.asyncio
    async def test_nothing_eligible(self, store, config):
        """A run with no eligible objects commits an empty archive and deletes nothing."""
        outcome = await ArchiveOrchestrator(store, config).run(
            SOURCE, DESTINATION, cutoff=datetime(2000, 1, 1, tzinfo=timezone.utc)
        )

        assert outcome.success
        assert outcome.embedded_keys == []
        assert outcome.deletion is None
        assert store.calls_for("delete_objects") == []

    @pytest.mark.asyncio
    async def test_keep_source(self, store):
        outcome = await ArchiveOrchestrator(store, ArchiveConfig(delete_sources=False)).run(
            SOURCE, DESTINATION, cutoff=CUTOFF
        )

        assert outcome.success
        assert outcome.deletion is None
        assert store.calls_for("delete_objects") == []
        assert "audit/a" in store.keys("logs")

    @pytest.mark.asyncio
    async def test_archive_in_source_bucket_not_reenumerated(self, config):
        """An archive written under the source location is never archived itself."""
        store = InMemoryObjectStore()
        store.add_object("logs", "a", b"alpha", last_modified=OLD)

        outcome = await ArchiveOrchestrator(store, config).run(
            SourceLocation("logs"), DestinationLocation("logs"), cutoff=CUTOFF
        )

        assert outcome.success
        assert outcome.embedded_keys == ["a"]
        assert store.keys("logs") == ["archive_20240101_000000.tar.gz"]

    @pytest.mark.asyncio
    async def test_delete_failures_do_not_fail_run(self, store, config):
        store.deny_delete("audit/a")

        outcome = await ArchiveOrchestrator(store, config).run(SOURCE, DESTINATION, cutoff=CUTOFF)

        assert outcome.success
        assert not outcome.deletion.ok
        assert outcome.deletion.deleted == ["audit/c"]
        assert store.get_data("logs", "audit/a") == b"alpha"


class TestSkippedObjects:
    """Tests for objects whose read cannot be opened."""

    @pytest.mark.asyncio
    async def test_fetch_failure_is_skipped_and_kept(self, store, config):
        store.inject_failure("get_object", key="audit/a")

        outcome = await ArchiveOrchestrator(store, config).run(SOURCE, DESTINATION, cutoff=CUTOFF)

        assert outcome.success
        assert outcome.skipped_keys == ["audit/a"]
        assert outcome.embedded_keys == ["audit/c"]
        assert list(read_archive(store)) == ["audit/c"]
        assert store.calls_for("delete_objects")[0]["keys"] == ["audit/c"]
        assert store.get_data("logs", "audit/a") == b"alpha"


class TestFailedRun:
    """Tests for runs that must not delete anything."""

    @pytest.mark.asyncio
    async def test_commit_failure_deletes_nothing(self, store, config):
        store.inject_failure("put_object")

        outcome = await ArchiveOrchestrator(store, config).run(SOURCE, DESTINATION, cutoff=CUTOFF)

        assert not outcome.success
        assert outcome.error
        assert store.calls_for("delete_objects") == []
        assert store.keys("logs") == ["audit/a", "audit/b", "audit/c", "other/d"]

    @pytest.mark.asyncio
    async def test_part_failure_aborts_upload(self, config):
        store = InMemoryObjectStore()
        store.create_bucket("cold")
        for i in range(4):
            store.add_object("logs", f"audit/{i}", bytes([i]) * (40 * 1024), last_modified=OLD)
        store.inject_failure("upload_part")

        outcome = await ArchiveOrchestrator(store, ArchiveConfig(compression="none")).run(
            SOURCE, DESTINATION, cutoff=CUTOFF, part_size=32 * 1024
        )

        assert not outcome.success
        assert store.calls_for("delete_objects") == []
        assert len(store.calls_for("abort_multipart_upload")) == 1
        assert store.pending_uploads == 0

    @pytest.mark.asyncio
    async def test_cancelled_run_aborts_upload(self):
        """Cancelling a run mid-upload aborts the multipart session."""
        store = StalledPartStore()
        store.create_bucket("cold")
        for i in range(4):
            store.add_object("logs", f"audit/{i}", bytes([i]) * (40 * 1024), last_modified=OLD)

        run = asyncio.create_task(
            ArchiveOrchestrator(store, ArchiveConfig(compression="none")).run(
                SOURCE, DESTINATION, cutoff=CUTOFF, part_size=32 * 1024
            )
        )
        await asyncio.wait_for(store.part_started.wait(), timeout=5)
        run.cancel()

        with pytest.raises(asyncio.CancelledError):
            await run

        assert len(store.calls_for("abort_multipart_upload")) == 1
        assert store.pending_uploads == 0
        assert store.calls_for("delete_objects") == []
        assert len(store.keys("logs")) == 4

    @pytest.mark.asyncio
    async def test_listing_failure_deletes_nothing(self, store, config):
        store.inject_failure("list_objects")

        outcome = await ArchiveOrchestrator(store, config).run(SOURCE, DESTINATION, cutoff=CUTOFF)

        assert not outcome.success
        assert store.calls_for("delete_objects") == []
        assert store.get_data("cold", ARCHIVE_KEY) is None

    @pytest.mark.asyncio
    async def test_malformed_listing_deletes_nothing(self, store, config):
        store.add_object("logs", "audit/z", b"zulu", last_modified=OLD, hide_size=True)

        outcome = await ArchiveOrchestrator(store, config).run(SOURCE, DESTINATION, cutoff=CUTOFF)

        assert not outcome.success
        assert "audit/z" in outcome.error
        assert store.calls_for("delete_objects") == []

    @pytest.mark.asyncio
    async def test_truncated_read_deletes_nothing(self, store, config):
        """A body failing mid-stream breaks the archive; the run fails."""
        store.fail_read_after("audit/c", 3)

        outcome = await ArchiveOrchestrator(
            store, ArchiveConfig(read_chunk_size=2)
        ).run(SOURCE, DESTINATION, cutoff=CUTOFF)

        assert not outcome.success
        assert store.calls_for("delete_objects") == []
        assert store.get_data("cold", ARCHIVE_KEY) is None


class TestArchiveEntryPoint:
    """Tests for the URL-level archive() coroutine."""

    @pytest.mark.asyncio
    async def test_archive_from_urls(self, store):
        outcome = await archive(
            MaintenanceConfig(),
            "s3://logs/audit/",
            "s3://cold/archives/",
            cutoff=CUTOFF,
            store=store,
        )

        assert outcome.success
        assert outcome.archive_key == ARCHIVE_KEY
        assert not store.is_connected

    @pytest.mark.asyncio
    async def test_invalid_url(self, store):
        with pytest.raises(InvalidLocationError):
            await archive(MaintenanceConfig(), "gs://logs", "s3://cold", store=store)

    def test_default_cutoff_margin(self):
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

        assert default_cutoff(1, now=now) == now - timedelta(seconds=1)
        assert default_cutoff(0, now=now) == now - timedelta(seconds=1)
