"""
Test Configuration - Shared fixtures for share index tests.

Uses pytest fixtures to create isolated test environments: a temporary
index directory, a small local share on disk, and an in-memory lister
whose tree tests can edit between crawls.
"""

import asyncio
import shutil
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Generator, List, Set

import pytest

from share_index.config import IndexConfig
from share_index.crawler import build_entry
from share_index.listers import DirectoryLister, StaticShareRegistry
from share_index.models import (
    CrawlResult, EntryKind, ListedEntry, ShareDescriptor, ShareType,
)


BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeLister(DirectoryLister):
    """
    In-memory DirectoryLister.

    The tree is a map of share-relative path to ListedEntry; directory
    children are derived from the paths. Paths in `failing` raise
    PermissionError when listed. Adding or removing a child moves the
    parent directory's mtime forward, as a real filesystem does; `touch`
    only changes the file itself.
    """

    def __init__(self, max_concurrency=None, delay: float = 0):
        self.max_concurrency = max_concurrency
        self.delay = delay
        self.items: Dict[str, ListedEntry] = {}
        self.failing: Set[str] = set()
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def add_dir(self, path: str):
        parent = path.rsplit("/", 1)[0] or "/"
        if parent != "/" and parent not in self.items:
            self.add_dir(parent)
        self.items[path] = ListedEntry(
            name=path.rsplit("/", 1)[1],
            kind=EntryKind.DIRECTORY,
            size=0,
            modified_at=BASE_TIME,
        )
        self._bump_parent(path)

    def add_file(self, path: str, size: int = 1, minutes: int = 0):
        parent = path.rsplit("/", 1)[0] or "/"
        if parent != "/" and parent not in self.items:
            self.add_dir(parent)
        self.items[path] = ListedEntry(
            name=path.rsplit("/", 1)[1],
            kind=EntryKind.FILE,
            size=size,
            modified_at=BASE_TIME + timedelta(minutes=minutes),
        )
        self._bump_parent(path)

    def remove(self, path: str):
        for key in [k for k in self.items if k == path or k.startswith(path + "/")]:
            del self.items[key]
        self._bump_parent(path)

    def _bump_parent(self, path: str):
        parent_path = path.rsplit("/", 1)[0]
        parent = self.items.get(parent_path)
        if parent is not None:
            self.items[parent_path] = replace(
                parent, modified_at=parent.modified_at + timedelta(seconds=1)
            )

    def touch(self, path: str, size: int):
        item = self.items[path]
        self.items[path] = ListedEntry(
            name=item.name,
            kind=item.kind,
            size=size,
            modified_at=item.modified_at + timedelta(seconds=1),
        )

    async def list(self, share: ShareDescriptor, relative_path: str) -> List[ListedEntry]:
        self.calls.append(relative_path)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if relative_path in self.failing:
                raise PermissionError(f"denied: {relative_path}")
            if relative_path != "/" and relative_path not in self.items:
                raise FileNotFoundError(relative_path)

            prefix = relative_path.rstrip("/") + "/"
            return [
                item for path, item in self.items.items()
                if path.startswith(prefix) and "/" not in path[len(prefix):]
            ]
        finally:
            self.in_flight -= 1

    def snapshot(self) -> CrawlResult:
        """What a crawl of the current tree produces, without crawling."""
        entries = []
        for path, item in self.items.items():
            parent = path.rsplit("/", 1)[0] or "/"
            entries.append(build_entry(item, parent, path.count("/") - 1))
        return CrawlResult(entries=entries, fingerprints={e.path: e.fingerprint for e in entries})


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="share_index_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> IndexConfig:
    """Create an isolated test configuration (no background ticks)."""
    return IndexConfig(
        index_dir=temp_dir / "indexes",
        incremental_check_interval=3600,
        max_cache_age=3600,
        failed_retry_interval=0,
        auto_cleanup=False,
        batch_size=4,
    )


@pytest.fixture
def share_root(temp_dir: Path) -> Path:
    """Local share tree: /a.txt (10 bytes), /docs/b.pdf (20 bytes)."""
    root = temp_dir / "share"
    (root / "docs").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"x" * 10)
    (root / "docs" / "b.pdf").write_bytes(b"x" * 20)
    return root


@pytest.fixture
def local_share(share_root: Path) -> ShareDescriptor:
    return ShareDescriptor(id=1, name="share", type=ShareType.LOCAL, root=str(share_root))


@pytest.fixture
def shares(local_share: ShareDescriptor) -> StaticShareRegistry:
    return StaticShareRegistry([local_share])


@pytest.fixture
def fake_lister() -> FakeLister:
    """In-memory tree: /docs and /music with 4 files each, 2 root files."""
    lister = FakeLister()
    for i in range(4):
        lister.add_file(f"/docs/report_{i}.pdf", size=100 + i, minutes=i)
    for i in range(4):
        lister.add_file(f"/music/track_{i}.mp3", size=200 + i, minutes=i)
    lister.add_file("/notes.txt", size=5)
    lister.add_file("/todo.md", size=6)
    return lister


@pytest.fixture
def fake_share() -> ShareDescriptor:
    return ShareDescriptor(id=7, name="fake", type=ShareType.LOCAL, root="/unused")


@pytest.fixture
def fake_shares(fake_share: ShareDescriptor) -> StaticShareRegistry:
    return StaticShareRegistry([fake_share])
