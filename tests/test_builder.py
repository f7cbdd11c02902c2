"""
Builder Tests - Verify full rebuilds and change notifications.

Tests:
- Successful build publishes and persists the index
- Failed build keeps the previous index servable and its status history
- Concurrent requests share one build
- Observers are notified, failing observers are isolated
"""

import asyncio
from dataclasses import replace

import pytest

from share_index.builder import IndexBuilder, build_progress
from share_index.crawler import Crawler
from share_index.events import ChangeNotifier
from share_index.errors import PersistenceError
from share_index.models import ChangeCounts, IndexChangeEvent, IndexStatus
from share_index.persistence import PersistenceManager
from share_index.store import IndexStore

from conftest import BASE_TIME


SHARE_ID = 7


@pytest.fixture
def store():
    return IndexStore()


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def builder(store, notifier, fake_lister, fake_shares, test_config):
    crawler = Crawler(lambda share: fake_lister, test_config)
    return IndexBuilder(
        store, fake_shares, crawler, PersistenceManager(test_config), notifier, test_config
    )


class TestBuildProgress:

    def test_progress_curve(self):
        assert build_progress(0) == 0
        assert build_progress(500) == 45
        assert build_progress(1000) == 90
        assert build_progress(50_000) == 90

    def test_never_above_95(self):
        assert all(build_progress(n) <= 95 for n in range(0, 5000, 37))


class TestIndexBuilder:
    """Tests for IndexBuilder."""

    @pytest.mark.asyncio
    async def test_build(self, builder, store, test_config):
        metadata = await builder.build(SHARE_ID)

        assert metadata.status is IndexStatus.COMPLETED
        assert metadata.total_files == 12
        assert metadata.progress == 100
        assert metadata.build_id

        index = store.index(SHARE_ID)
        assert index is not None
        assert index.is_consistent()
        assert index.metadata is metadata

        on_disk = await PersistenceManager(test_config).load(SHARE_ID)
        assert on_disk.metadata.build_id == metadata.build_id

    @pytest.mark.asyncio
    async def test_schedule_marks_building(self, builder, store):
        task = builder.schedule(SHARE_ID)

        assert store.state(SHARE_ID).metadata.status is IndexStatus.BUILDING
        await task

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_build(self, builder, fake_lister):
        fake_lister.delay = 0.01

        first = builder.schedule(SHARE_ID)
        second = builder.schedule(SHARE_ID)

        assert first is second
        await first

    @pytest.mark.asyncio
    async def test_failed_build_keeps_previous(self, builder, store, fake_lister):
        await builder.build(SHARE_ID)
        previous = store.index(SHARE_ID)

        fake_lister.failing.add("/")
        metadata = await builder.build(SHARE_ID)

        assert metadata.status is IndexStatus.FAILED
        assert metadata.error
        assert metadata.total_files == 12
        assert store.index(SHARE_ID) is previous
        assert store.state(SHARE_ID).metadata.status is IndexStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_build_keeps_incremental_fields(self, builder, store, fake_lister):
        await builder.build(SHARE_ID)
        built = store.index(SHARE_ID)
        counts = ChangeCounts(added=2, modified=1)
        store.publish(SHARE_ID, replace(built, metadata=built.metadata.copy(
            incremental=True, last_incremental_at=BASE_TIME, last_change_counts=counts,
        )))

        fake_lister.failing.add("/")
        metadata = await builder.build(SHARE_ID)

        assert metadata.status is IndexStatus.FAILED
        assert metadata.error
        assert metadata.last_incremental_at == BASE_TIME
        assert metadata.last_change_counts == counts
        assert metadata.build_id == built.metadata.build_id

    @pytest.mark.asyncio
    async def test_first_build_failure_has_empty_metadata(self, builder, fake_lister):
        fake_lister.failing.add("/")

        metadata = await builder.build(SHARE_ID)

        assert metadata.status is IndexStatus.FAILED
        assert metadata.total_files == 0
        assert metadata.last_incremental_at is None

    @pytest.mark.asyncio
    async def test_missing_share_fails(self, builder):
        metadata = await builder.build(99)

        assert metadata.status is IndexStatus.FAILED
        assert "99" in metadata.error

    @pytest.mark.asyncio
    async def test_disabled_share_fails(self, builder, fake_share):
        fake_share.enabled = False

        metadata = await builder.build(SHARE_ID)

        assert metadata.status is IndexStatus.FAILED

    @pytest.mark.asyncio
    async def test_persistence_failure_fails_build(self, builder, store, monkeypatch):
        async def broken_save(*args, **kwargs):
            raise PersistenceError("disk full")

        monkeypatch.setattr(builder._persistence, "save", broken_save)

        metadata = await builder.build(SHARE_ID)

        assert metadata.status is IndexStatus.FAILED
        assert store.index(SHARE_ID) is None

    @pytest.mark.asyncio
    async def test_on_built_hook(self, builder):
        built = []
        builder.on_built = built.append

        await builder.build(SHARE_ID)

        assert built == [SHARE_ID]

    @pytest.mark.asyncio
    async def test_rebuild_event(self, builder, notifier):
        events = []
        notifier.subscribe(events.append)

        await builder.build(SHARE_ID)

        assert events == [IndexChangeEvent(
            share_id=SHARE_ID, kind="rebuild", added=12, modified=0, deleted=0, total_files=12,
        )]


class TestChangeNotifier:
    """Tests for ChangeNotifier."""

    def event(self):
        return IndexChangeEvent(SHARE_ID, "incremental", 1, 0, 0, 13)

    def test_unsubscribe(self, notifier):
        events = []
        unsubscribe = notifier.subscribe(events.append)

        notifier.publish(self.event())
        unsubscribe()
        notifier.publish(self.event())

        assert len(events) == 1
        assert notifier.observer_count == 0

    def test_failing_observer_isolated(self, notifier):
        events = []

        def broken(event):
            raise RuntimeError("observer bug")

        notifier.subscribe(broken)
        notifier.subscribe(events.append)

        notifier.publish(self.event())

        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_async_observer(self, notifier):
        received = asyncio.Event()

        async def observer(event):
            received.set()

        notifier.subscribe(observer)
        notifier.publish(self.event())

        await asyncio.wait_for(received.wait(), timeout=1)
