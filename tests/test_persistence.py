"""
Persistence Tests - Verify atomic index artifacts.

Tests:
- Save/load round trip
- Build id shared by all artifacts, temp files cleaned up
- Fingerprint reconstruction
- Rejection of stale, damaged or mixed-build artifacts
- Failed saves leave previous artifacts intact
"""

import json
import os
from datetime import timedelta

import pytest

from share_index.config import IndexConfig
from share_index.crawler import Crawler
from share_index.errors import PersistenceError
from share_index.models import IndexMetadata, IndexStatus, utcnow
from share_index.persistence import PersistenceManager


SHARE_ID = 7


@pytest.fixture
def persistence(test_config):
    return PersistenceManager(test_config)


@pytest.fixture
def crawled(fake_lister):
    return fake_lister.snapshot()


def completed(total_files, **changes):
    return IndexMetadata(
        status=IndexStatus.COMPLETED,
        progress=100,
        total_files=total_files,
        last_updated_at=utcnow(),
        **changes,
    )


async def save(persistence, result, **changes):
    return await persistence.save(
        SHARE_ID, result.entries, completed(len(result.entries), **changes), result.fingerprints
    )


class TestRoundTrip:
    """Save then load returns the same index."""

    @pytest.mark.asyncio
    async def test_round_trip(self, persistence, crawled):
        await save(persistence, crawled)

        loaded = await persistence.load(SHARE_ID)

        assert loaded is not None
        assert len(loaded.entries) == len(crawled.entries)
        assert loaded.fingerprints == crawled.fingerprints
        assert loaded.metadata.total_files == len(crawled.entries)
        assert loaded.metadata.status is IndexStatus.COMPLETED
        assert {e.path: e for e in loaded.entries} == {e.path: e for e in crawled.entries}

    @pytest.mark.asyncio
    async def test_save_sets_build_id(self, persistence, crawled, test_config):
        metadata = await save(persistence, crawled)

        assert metadata.build_id
        assert metadata.share_id == SHARE_ID

        for path in persistence.artifact_paths(SHARE_ID):
            with open(path, encoding="utf-8") as f:
                doc = json.load(f)
            assert doc["buildId"] == metadata.build_id

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, persistence, crawled, test_config):
        await save(persistence, crawled)

        leftovers = [p for p in os.listdir(test_config.index_dir) if ".tmp." in p]
        assert leftovers == []

    @pytest.mark.asyncio
    async def test_metadata_fields_survive(self, persistence, crawled):
        await save(persistence, crawled, build_duration_ms=1234, incremental=True)

        loaded = await persistence.load(SHARE_ID)

        assert loaded.metadata.build_duration_ms == 1234
        assert loaded.metadata.incremental is True

    @pytest.mark.asyncio
    async def test_missing_index(self, persistence):
        assert await persistence.load(SHARE_ID) is None

    @pytest.mark.asyncio
    async def test_stored_share_ids(self, persistence, crawled):
        await save(persistence, crawled)
        assert await persistence.stored_share_ids() == [SHARE_ID]


class TestLoadRejection:
    """Load refuses artifacts it cannot trust."""

    @pytest.mark.asyncio
    async def test_rejects_old_index(self, persistence, crawled):
        await persistence.save(
            SHARE_ID,
            crawled.entries,
            completed(len(crawled.entries)).copy(last_updated_at=utcnow() - timedelta(days=2)),
            crawled.fingerprints,
        )

        assert await persistence.load(SHARE_ID) is None
        assert await persistence.load(SHARE_ID, max_age=None) is not None

    @pytest.mark.asyncio
    async def test_rejects_truncated_entries(self, persistence, crawled):
        await save(persistence, crawled)

        path = persistence.entries_path(SHARE_ID)
        data = path.read_bytes()
        path.write_bytes(data[: len(data) // 2])

        assert await persistence.load(SHARE_ID) is None

    @pytest.mark.asyncio
    async def test_rejects_entries_from_other_build(self, persistence, crawled, fake_lister, fake_share, test_config):
        """Entries renamed in but metadata not: a save interrupted between renames."""
        await save(persistence, crawled)
        old_meta = persistence.meta_path(SHARE_ID).read_bytes()

        fake_lister.add_file("/extra.txt")
        grown = await Crawler(lambda s: fake_lister, test_config).crawl(fake_share)
        await save(persistence, grown)
        persistence.meta_path(SHARE_ID).write_bytes(old_meta)

        assert await persistence.load(SHARE_ID) is None

    @pytest.mark.asyncio
    async def test_disabled_persistence(self, crawled, test_config):
        config = IndexConfig(index_dir=test_config.index_dir, enable_persistence=False)
        persistence = PersistenceManager(config)

        metadata = await save(persistence, crawled)

        assert metadata.build_id
        assert not persistence.entries_path(SHARE_ID).exists()
        assert await persistence.load(SHARE_ID) is None


class TestFingerprintReconstruction:
    """A damaged fingerprint artifact is rebuilt from entries."""

    @pytest.mark.asyncio
    async def test_missing_hashes(self, persistence, crawled):
        await save(persistence, crawled)
        persistence.hashes_path(SHARE_ID).unlink()

        loaded = await persistence.load(SHARE_ID)

        assert loaded is not None
        assert loaded.fingerprints == crawled.fingerprints

    @pytest.mark.asyncio
    async def test_corrupt_hashes(self, persistence, crawled):
        await save(persistence, crawled)
        persistence.hashes_path(SHARE_ID).write_text("{not json", encoding="utf-8")

        loaded = await persistence.load(SHARE_ID)

        assert loaded is not None
        assert loaded.fingerprints == crawled.fingerprints
        assert loaded.is_consistent()


class TestFailedSave:
    """A failed save changes nothing on disk."""

    @pytest.mark.asyncio
    async def test_inconsistent_fingerprints_refused(self, persistence, crawled):
        fingerprints = dict(crawled.fingerprints)
        fingerprints.pop(crawled.entries[0].path)

        with pytest.raises(PersistenceError):
            await persistence.save(
                SHARE_ID, crawled.entries, completed(len(crawled.entries)), fingerprints
            )

        assert not persistence.entries_path(SHARE_ID).exists()

    @pytest.mark.asyncio
    async def test_write_failure_keeps_previous(self, persistence, crawled, monkeypatch, test_config):
        first = await save(persistence, crawled)

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("share_index.persistence.os.replace", broken_replace)

        with pytest.raises(PersistenceError):
            await save(persistence, crawled)

        monkeypatch.undo()

        loaded = await persistence.load(SHARE_ID)
        assert loaded is not None
        assert loaded.metadata.build_id == first.build_id
        assert [p for p in os.listdir(test_config.index_dir) if ".tmp." in p] == []


class TestInspectAndDelete:
    """Artifact reports and removal."""

    @pytest.mark.asyncio
    async def test_inspect_valid(self, persistence, crawled):
        await save(persistence, crawled)

        report = await persistence.inspect(SHARE_ID)

        assert report.entries_valid
        assert report.hashes_valid
        assert report.entry_count == len(crawled.entries)

    @pytest.mark.asyncio
    async def test_inspect_truncated_hashes(self, persistence, crawled):
        await save(persistence, crawled)
        path = persistence.hashes_path(SHARE_ID)
        path.write_bytes(path.read_bytes()[:10])

        report = await persistence.inspect(SHARE_ID)

        assert report.entries_valid
        assert report.hashes_exists
        assert not report.hashes_valid

    @pytest.mark.asyncio
    async def test_delete(self, persistence, crawled, test_config):
        await save(persistence, crawled)
        stray = persistence.entries_path(SHARE_ID).with_name(f"share_{SHARE_ID}.json.tmp.abc")
        stray.write_text("{}", encoding="utf-8")

        await persistence.delete(SHARE_ID)

        assert os.listdir(test_config.index_dir) == []

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, persistence):
        await persistence.delete(SHARE_ID)
