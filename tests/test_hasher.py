"""
Hasher Tests - Verify entry fingerprints.

Tests:
- Determinism for identical input
- Sensitivity to size, mtime, kind and inode
- Batch fingerprinting in the thread pool
"""

from datetime import timedelta

import pytest

from share_index.crawler import build_entry
from share_index.hasher import Hasher, fingerprint, fingerprint_entry, fingerprint_map
from share_index.models import EntryKind, ListedEntry

from conftest import BASE_TIME


class TestFingerprint:
    """Tests for fingerprint()."""

    def test_deterministic(self):
        first = fingerprint("/a.txt", 10, BASE_TIME, EntryKind.FILE)
        second = fingerprint("/a.txt", 10, BASE_TIME, EntryKind.FILE)
        assert first == second

    def test_fixed_size_hex(self):
        value = fingerprint("/a.txt", 10, BASE_TIME, EntryKind.FILE)
        assert len(value) == 16
        int(value, 16)

    def test_size_changes_fingerprint(self):
        assert (
            fingerprint("/a.txt", 10, BASE_TIME, EntryKind.FILE)
            != fingerprint("/a.txt", 15, BASE_TIME, EntryKind.FILE)
        )

    def test_mtime_changes_fingerprint(self):
        later = BASE_TIME + timedelta(seconds=1)
        assert (
            fingerprint("/a.txt", 10, BASE_TIME, EntryKind.FILE)
            != fingerprint("/a.txt", 10, later, EntryKind.FILE)
        )

    def test_kind_changes_fingerprint(self):
        assert (
            fingerprint("/a", 0, BASE_TIME, EntryKind.FILE)
            != fingerprint("/a", 0, BASE_TIME, EntryKind.DIRECTORY)
        )

    def test_inode_is_included_when_known(self):
        assert (
            fingerprint("/a.txt", 10, BASE_TIME, EntryKind.FILE, inode=1)
            != fingerprint("/a.txt", 10, BASE_TIME, EntryKind.FILE, inode=2)
        )

    def test_sub_millisecond_mtime_ignored(self):
        """mtime is compared at millisecond precision."""
        nudged = BASE_TIME + timedelta(microseconds=100)
        assert (
            fingerprint("/a.txt", 10, BASE_TIME, EntryKind.FILE)
            == fingerprint("/a.txt", 10, nudged, EntryKind.FILE)
        )

    def test_entry_fingerprint_matches_crawler(self):
        entry = build_entry(
            ListedEntry("a.txt", EntryKind.FILE, 10, BASE_TIME, {"inode": 42}), "/", 0
        )
        assert fingerprint_entry(entry) == entry.fingerprint


class TestHasher:
    """Tests for the Hasher thread pool."""

    @pytest.fixture
    def hasher(self):
        h = Hasher(max_workers=2)
        yield h
        h.close()

    @pytest.mark.asyncio
    async def test_fingerprint_entries(self, hasher):
        entries = [
            build_entry(ListedEntry(f"f{i}.txt", EntryKind.FILE, i, BASE_TIME), "/", 0)
            for i in range(50)
        ]

        result = await hasher.fingerprint_entries(entries)

        assert result == fingerprint_map(entries)
        assert result == {e.path: e.fingerprint for e in entries}

    @pytest.mark.asyncio
    async def test_empty_input(self, hasher):
        assert await hasher.fingerprint_entries([]) == {}
