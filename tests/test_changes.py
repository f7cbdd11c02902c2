"""
Change Detection Tests - Verify snapshot diffing.

Tests:
- Added / modified / deleted classification
- Every path lands in exactly one bucket
- Directories that failed to list never produce deletions
- Change ratio and full rebuild threshold
"""

import pytest

from share_index.changes import ChangeDetector
from share_index.crawler import Crawler, build_entry
from share_index.models import (
    ChangeSet, CrawlResult, EntryKind, IndexMetadata, ListedEntry, ShareIndex,
)

from conftest import BASE_TIME


async def snapshot(lister, share, config):
    return await Crawler(lambda s: lister, config).crawl(share)


def entry(path):
    parent, name = path.rsplit("/", 1)
    return build_entry(ListedEntry(name, EntryKind.FILE, 1, BASE_TIME), parent or "/", 0)


def as_index(share_id, result):
    return ShareIndex(
        share_id=share_id,
        entries=list(result.entries),
        fingerprints=dict(result.fingerprints),
        metadata=IndexMetadata(share_id=share_id, total_files=len(result.entries)),
    )


class TestChangeDetector:
    """Tests for ChangeDetector.detect()."""

    @pytest.mark.asyncio
    async def test_no_changes(self, fake_lister, fake_share, test_config):
        first = await snapshot(fake_lister, fake_share, test_config)
        second = await snapshot(fake_lister, fake_share, test_config)

        changes = ChangeDetector().detect(as_index(7, first), second)

        assert changes.total_changes == 0

    @pytest.mark.asyncio
    async def test_classifies_changes(self, fake_lister, fake_share, test_config):
        previous = as_index(7, await snapshot(fake_lister, fake_share, test_config))

        fake_lister.add_file("/docs/new.txt")
        fake_lister.touch("/notes.txt", size=50)
        fake_lister.remove("/todo.md")
        fresh = await snapshot(fake_lister, fake_share, test_config)

        changes = ChangeDetector().detect(previous, fresh)

        assert [e.path for e in changes.added] == ["/docs/new.txt"]
        # /docs gained a child, so its mtime moved too
        assert {e.path for e in changes.modified} == {"/docs", "/notes.txt"}
        assert changes.deleted == ["/todo.md"]
        assert {e.path: e.size for e in changes.modified}["/notes.txt"] == 50

    @pytest.mark.asyncio
    async def test_classification_is_complete(self, fake_lister, fake_share, test_config):
        """added ∪ modified ∪ unchanged = S2 and deleted ∪ modified ∪ unchanged = S1."""
        s1 = await snapshot(fake_lister, fake_share, test_config)

        fake_lister.remove("/music")
        fake_lister.add_file("/photos/a.jpg")
        fake_lister.touch("/docs/report_2.pdf", size=999)
        s2 = await snapshot(fake_lister, fake_share, test_config)

        changes = ChangeDetector().detect(as_index(7, s1), s2)

        s1_paths = set(s1.fingerprints)
        s2_paths = set(s2.fingerprints)
        added = {e.path for e in changes.added}
        modified = {e.path for e in changes.modified}
        deleted = set(changes.deleted)
        unchanged = {
            p for p in s1_paths & s2_paths if s1.fingerprints[p] == s2.fingerprints[p]
        }

        assert added | modified | unchanged == s2_paths
        assert deleted | modified | unchanged == s1_paths
        assert not added & modified
        assert not added & unchanged
        assert not modified & unchanged
        assert not deleted & (modified | unchanged)

    @pytest.mark.asyncio
    async def test_directory_deletion_lists_children(self, fake_lister, fake_share, test_config):
        previous = as_index(7, await snapshot(fake_lister, fake_share, test_config))

        fake_lister.remove("/music")
        fresh = await snapshot(fake_lister, fake_share, test_config)

        changes = ChangeDetector().detect(previous, fresh)

        assert set(changes.deleted) == {"/music"} | {f"/music/track_{i}.mp3" for i in range(4)}

    @pytest.mark.asyncio
    async def test_unlisted_directory_is_not_deleted(self, fake_lister, fake_share, test_config):
        """Children of a directory that failed to list are unknown, not gone."""
        previous = as_index(7, await snapshot(fake_lister, fake_share, test_config))

        fake_lister.failing.add("/music")
        fake_lister.remove("/todo.md")
        fresh = await snapshot(fake_lister, fake_share, test_config)

        changes = ChangeDetector().detect(previous, fresh)

        assert fresh.failed_dirs == ["/music"]
        assert changes.deleted == ["/todo.md"]
        assert not changes.added
        assert not changes.modified

    def test_failed_dir_guard_matches_whole_segments(self):
        previous = as_index(7, CrawlResult(
            entries=[entry("/music/a.mp3"), entry("/musicbox.zip")],
            fingerprints={},
        ))
        previous.fingerprints.update({e.path: e.fingerprint for e in previous.entries})
        fresh = CrawlResult(entries=[], fingerprints={}, failed_dirs=["/music"])

        changes = ChangeDetector().detect(previous, fresh)

        assert changes.deleted == ["/musicbox.zip"]


class TestRebuildThreshold:
    """Tests for change ratio and threshold escalation."""

    def test_change_ratio(self):
        changes = ChangeSet(deleted=["/a", "/b", "/c"])
        assert changes.change_ratio(10) == pytest.approx(0.3)

    def test_ratio_of_empty_index(self):
        changes = ChangeSet(deleted=["/a"])
        assert changes.change_ratio(0) == 1.0

    def test_threshold_is_exclusive(self):
        at_threshold = ChangeSet(deleted=["/a", "/b", "/c"])
        above = ChangeSet(deleted=["/a", "/b", "/c", "/d"])

        assert not ChangeDetector.requires_full_rebuild(at_threshold, 10, 0.3)
        assert ChangeDetector.requires_full_rebuild(above, 10, 0.3)

    def test_counts(self):
        changes = ChangeSet(deleted=["/a", "/b"])
        counts = changes.counts()
        assert (counts.added, counts.modified, counts.deleted) == (0, 0, 2)
        assert counts.total == 2
