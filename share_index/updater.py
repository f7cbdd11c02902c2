"""
Incremental Updater - Keeps share indexes fresh between full rebuilds.

Cycle flow (per share, on its own schedule):
    no index          → full rebuild
    share gone        → remove index
    share disabled    → skip
    Crawl (DIFF, unchanged directories reused) → ChangeDetector
        no changes    → record check time
        ratio > limit → full rebuild
        otherwise     → patch a copy → persist → publish → notify

Every `full_scan_interval` the DIFF crawl walks the whole share instead of
reusing unchanged directories, which catches edits that leave directory
mtimes alone.

The live ShareIndex is never patched in place: a copy of its entry list is
patched, persisted, and only then swapped in. A rebuild that starts while a
cycle runs bumps the share's generation, and the cycle drops its result.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from .builder import IndexBuilder
from .changes import ChangeDetector
from .config import IndexConfig
from .crawler import Crawler
from .errors import PersistenceError
from .events import ChangeNotifier
from .listers import ShareRegistry
from .models import (
    ChangeSet, CrawlMode, IndexChangeEvent, IndexEntry, IndexMetadata,
    IndexStatus, OutcomeKind, ShareIndex, UpdateOutcome, utcnow,
)
from .persistence import PersistenceManager
from .settings import ShareSettings
from .store import IndexStore, ShareState


logger = logging.getLogger(__name__)


def apply_changes(entries: List[IndexEntry], changes: ChangeSet) -> List[IndexEntry]:
    """
    Patch a copy of an entry list.

    Deleted paths are removed in descending index order so earlier
    removals never shift the positions of later ones; modified entries are
    replaced where they stand; added entries are appended.
    """
    patched = list(entries)

    deleted = set(changes.deleted)
    if deleted:
        positions = [i for i, entry in enumerate(patched) if entry.path in deleted]
        for position in reversed(positions):
            del patched[position]

    if changes.modified:
        replacements = {entry.path: entry for entry in changes.modified}
        patched = [replacements.get(entry.path, entry) for entry in patched]

    patched.extend(changes.added)
    return patched


def apply_fingerprints(fingerprints: Dict[str, str], changes: ChangeSet) -> Dict[str, str]:
    patched = dict(fingerprints)
    for path in changes.deleted:
        patched.pop(path, None)
    for entry in changes.modified:
        patched[entry.path] = entry.fingerprint
    for entry in changes.added:
        patched[entry.path] = entry.fingerprint
    return patched


class ShareScheduler:
    """
    One cancellable periodic task per share.

    `start` always replaces an existing schedule, so reconfiguring the
    interval is stop + start and never leaves a second loop behind. Each
    share may run on its own interval; `interval` is the default.
    """

    def __init__(self, tick: Callable[[int], Awaitable], interval: float):
        self._tick = tick
        self.interval = interval
        self._tasks: Dict[int, asyncio.Task] = {}
        self._intervals: Dict[int, float] = {}

    def start(self, share_id: int, interval: Optional[float] = None):
        interval = interval or self.interval
        self.stop(share_id)
        loop = asyncio.get_event_loop()
        self._tasks[share_id] = loop.create_task(self._run(share_id, interval))
        self._intervals[share_id] = interval
        logger.debug(f"Scheduled share {share_id} every {interval}s")

    def stop(self, share_id: int):
        task = self._tasks.pop(share_id, None)
        self._intervals.pop(share_id, None)
        if task is None or task.done():
            return
        # A tick that stops its own schedule just lets the loop run out
        if task is not asyncio.current_task():
            task.cancel()

    def stop_all(self):
        for share_id in list(self._tasks):
            self.stop(share_id)

    async def close(self):
        """Stop every schedule and wait for the loops to finish."""
        tasks = [t for t in self._tasks.values() if t is not asyncio.current_task()]
        self.stop_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_scheduled(self, share_id: int) -> bool:
        task = self._tasks.get(share_id)
        return task is not None and not task.done()

    def interval_for(self, share_id: int) -> Optional[float]:
        """Interval of a running schedule, None when not scheduled."""
        if not self.is_scheduled(share_id):
            return None
        return self._intervals.get(share_id)

    def scheduled_ids(self) -> List[int]:
        return [sid for sid, task in self._tasks.items() if not task.done()]

    async def _run(self, share_id: int, interval: float):
        task = asyncio.current_task()
        while self._tasks.get(share_id) is task:
            await asyncio.sleep(interval)
            if self._tasks.get(share_id) is not task:
                break
            try:
                await self._tick(share_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduled update for share {share_id} failed: {e}")


class IncrementalUpdater:
    """
    Runs incremental cycles, at most one per share at a time.

    `on_share_removed` is awaited when a cycle finds its share gone from
    the share registry (the registry drops memory, disk and schedule).
    """

    def __init__(
        self,
        store: IndexStore,
        shares: ShareRegistry,
        crawler: Crawler,
        builder: IndexBuilder,
        persistence: PersistenceManager,
        notifier: ChangeNotifier,
        config: IndexConfig | None = None,
        detector: Optional[ChangeDetector] = None,
        settings: Optional[ShareSettings] = None,
    ):
        self.config = config or IndexConfig()
        self.settings = settings or ShareSettings(self.config)
        self._store = store
        self._shares = shares
        self._crawler = crawler
        self._builder = builder
        self._persistence = persistence
        self._notifier = notifier
        self._detector = detector or ChangeDetector()
        self.on_share_removed: Optional[Callable[[int], Awaitable[None]]] = None

    async def run_cycle(self, share_id: int, periodic: bool = False) -> UpdateOutcome:
        """
        Run one incremental cycle.

        A manual call while a cycle runs waits for that cycle; a periodic
        tick skips instead.
        """
        state = self._store.state(share_id)

        if not state.cycle_running:
            loop = asyncio.get_event_loop()
            state.cycle_task = loop.create_task(self._cycle(state))
        elif periodic:
            logger.debug(f"Update for share {share_id} still running, skipping tick")
            return UpdateOutcome(share_id, OutcomeKind.SKIPPED, reason="cycle already running")

        return await asyncio.shield(state.cycle_task)

    async def _cycle(self, state: ShareState) -> UpdateOutcome:
        start_time = time.monotonic()
        try:
            outcome = await self._run(state, start_time)
        except Exception as e:
            logger.error(f"Incremental update failed for share {state.share_id}: {e}")
            outcome = UpdateOutcome(state.share_id, OutcomeKind.FAILED, error=str(e))

        outcome.duration_ms = int((time.monotonic() - start_time) * 1000)
        state.last_outcome = outcome
        return outcome

    async def _run(self, state: ShareState, start_time: float) -> UpdateOutcome:
        share_id = state.share_id

        share = self._shares.get(share_id)
        if share is None:
            logger.info(f"Share {share_id} no longer exists, removing its index")
            if self.on_share_removed:
                await self.on_share_removed(share_id)
            return UpdateOutcome(share_id, OutcomeKind.SKIPPED, reason="share removed")

        if not share.enabled:
            logger.debug(f"Share {share_id} is disabled, skipping update")
            return UpdateOutcome(share_id, OutcomeKind.SKIPPED, reason="share disabled")

        if state.building:
            return UpdateOutcome(share_id, OutcomeKind.SKIPPED, reason="full build in progress")

        current = state.index
        if current is None:
            metadata = await self._builder.build(share_id)
            return self._rebuild_outcome(share_id, metadata, "no index in memory")

        generation = state.generation
        full_scan = self._full_scan_due(state)
        fresh = await self._crawler.crawl(
            share, CrawlMode.DIFF, previous=None if full_scan else current
        )
        if state.generation != generation:
            return UpdateOutcome(share_id, OutcomeKind.SUPERSEDED, reason="rebuilt during crawl")
        complete = full_scan and not fresh.failed_dirs

        changes = self._detector.detect(current, fresh)
        ratio = changes.change_ratio(len(current))

        if changes.total_changes == 0:
            state.last_checked_at = utcnow()
            if complete:
                state.last_full_scan_at = state.last_checked_at
            logger.debug(f"No changes for share {share_id}")
            return UpdateOutcome(share_id, OutcomeKind.NO_CHANGES)

        threshold = self.settings.effective(share_id).full_rebuild_threshold
        if self._detector.requires_full_rebuild(changes, len(current), threshold):
            logger.info(
                f"Share {share_id}: {changes.total_changes} changes "
                f"({ratio:.0%} > {threshold:.0%}), running full rebuild"
            )
            metadata = await self._builder.build(share_id)
            outcome = self._rebuild_outcome(share_id, metadata, "change ratio above threshold")
            outcome.counts = changes.counts()
            outcome.change_ratio = ratio
            return outcome

        outcome = await self._apply(state, current, changes, generation, ratio)
        if complete and outcome.kind is OutcomeKind.INCREMENTAL:
            state.last_full_scan_at = utcnow()
        return outcome

    def _full_scan_due(self, state: ShareState) -> bool:
        interval = self.config.full_scan_interval
        if interval <= 0 or state.last_full_scan_at is None:
            return True
        return (utcnow() - state.last_full_scan_at).total_seconds() >= interval

    async def _apply(
        self,
        state: ShareState,
        current: ShareIndex,
        changes: ChangeSet,
        generation: int,
        ratio: float,
    ) -> UpdateOutcome:
        share_id = state.share_id
        counts = changes.counts()

        async with state.lock:
            if state.generation != generation or state.index is not current:
                return UpdateOutcome(share_id, OutcomeKind.SUPERSEDED, reason="index replaced")

            entries = apply_changes(current.entries, changes)
            fingerprints = apply_fingerprints(current.fingerprints, changes)

            now = utcnow()
            metadata = current.metadata.copy(
                status=IndexStatus.COMPLETED,
                progress=100,
                total_files=len(entries),
                last_updated_at=now,
                last_incremental_at=now,
                last_change_counts=counts,
                incremental=True,
                error=None,
            )

            previous_metadata = state.metadata
            state.metadata = previous_metadata.copy(status=IndexStatus.BUILDING)
            try:
                metadata = await self._persistence.save(share_id, entries, metadata, fingerprints)
            except PersistenceError as e:
                logger.error(f"Incremental update for share {share_id} not applied: {e}")
                if state.generation == generation:
                    state.metadata = previous_metadata
                return UpdateOutcome(
                    share_id, OutcomeKind.FAILED, counts=counts, change_ratio=ratio, error=str(e)
                )

            if state.generation != generation:
                return UpdateOutcome(share_id, OutcomeKind.SUPERSEDED, reason="rebuilt during persist")

            self._store.publish(share_id, ShareIndex(
                share_id=share_id,
                entries=entries,
                fingerprints=fingerprints,
                metadata=metadata,
            ))
            state.last_checked_at = None

        logger.info(
            f"Incremental update for share {share_id}: +{counts.added} "
            f"~{counts.modified} -{counts.deleted} ({metadata.total_files} entries)"
        )

        self._notifier.publish(IndexChangeEvent(
            share_id=share_id,
            kind="incremental",
            added=counts.added,
            modified=counts.modified,
            deleted=counts.deleted,
            total_files=metadata.total_files,
        ))

        return UpdateOutcome(share_id, OutcomeKind.INCREMENTAL, counts=counts, change_ratio=ratio)

    @staticmethod
    def _rebuild_outcome(share_id: int, metadata: IndexMetadata, reason: str) -> UpdateOutcome:
        if metadata.status is IndexStatus.FAILED:
            return UpdateOutcome(share_id, OutcomeKind.FAILED, reason=reason, error=metadata.error)
        return UpdateOutcome(share_id, OutcomeKind.FULL_REBUILD, reason=reason)
