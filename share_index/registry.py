"""
Index Registry - Public façade of the share indexing engine.

One IndexRegistry is constructed by the process entry point and handed to
whatever serves requests (HTTP handlers, CLI). It wires the components:

    IndexRegistry
      ├── IndexStore          live snapshots + per-share coordination
      ├── PersistenceManager  atomic artifacts on disk
      ├── IndexBuilder        full rebuilds (Crawler)
      ├── IncrementalUpdater  periodic / manual cycles (ChangeDetector)
      ├── ShareScheduler      one periodic task per share
      ├── ShareWatcher        optional watchdog trigger for local shares
      └── SearchEngine        ranked name search

Read operations never wait for a background build: they answer from the
last good snapshot, or with an empty result flagged with the status.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional

from .builder import IndexBuilder
from .config import IndexConfig
from .crawler import Crawler
from .errors import (
    IncrementalUpdateDisabledError, InvalidShareIdError, ShareNotFoundError,
)
from .events import ChangeNotifier, Observer
from .hasher import Hasher
from .listers import ListerFactory, ShareRegistry, default_lister_factory
from .models import (
    IncrementalSettings, IncrementalStats, IndexMetadata, IndexStatus,
    IntegrityChecks, IntegrityReport, RepairAction, SearchOptions,
    SearchResult, ShareDescriptor, ShareIndex, UpdateOutcome, utcnow,
)
from .persistence import PersistenceManager
from .search import SearchEngine, validate_options
from .settings import ShareSettings, validate_incremental_settings
from .store import IndexStore, ShareState
from .updater import IncrementalUpdater, ShareScheduler
from .watcher import ShareWatcher


logger = logging.getLogger(__name__)


def normalize_share_id(share_id: Any) -> int:
    """
    Accept an int or a numeric string.

    Raises:
        InvalidShareIdError: Anything else (including bools and negatives)
    """
    if isinstance(share_id, bool):
        raise InvalidShareIdError(share_id)
    if isinstance(share_id, int):
        normalized = share_id
    elif isinstance(share_id, str) and share_id.strip().isdigit():
        normalized = int(share_id.strip())
    else:
        raise InvalidShareIdError(share_id)
    if normalized < 0:
        raise InvalidShareIdError(share_id)
    return normalized


class IndexRegistry:
    """
    Share index façade.

    Usage:
        registry = IndexRegistry(StaticShareRegistry(shares), IndexConfig.from_env())
        await registry.init()
        try:
            result = await registry.search(1, "report")
        finally:
            await registry.shutdown()
    """

    def __init__(
        self,
        shares: ShareRegistry,
        config: Optional[IndexConfig] = None,
        lister_factory: Optional[ListerFactory] = None,
    ):
        self.config = config or IndexConfig()
        self.shares = shares

        self._store = IndexStore()
        self._persistence = PersistenceManager(self.config)
        self._crawler = Crawler(lister_factory or default_lister_factory(self.config), self.config)
        self._notifier = ChangeNotifier()
        self._hasher = Hasher()
        self._search = SearchEngine(self.config.default_search_limit)
        self._settings = ShareSettings(self.config)

        self._builder = IndexBuilder(
            self._store, shares, self._crawler, self._persistence, self._notifier, self.config
        )
        self._builder.on_built = self._start_tracking

        self._updater = IncrementalUpdater(
            self._store, shares, self._crawler, self._builder,
            self._persistence, self._notifier, self.config,
            settings=self._settings,
        )
        self._updater.on_share_removed = self._forget_share

        self._scheduler = ShareScheduler(self._scheduled_tick, self.config.incremental_check_interval)
        self._watcher: Optional[ShareWatcher] = None
        if self.config.watch_local_shares:
            self._watcher = ShareWatcher(self.config, on_change=self._on_local_change)

        self._cleanup_task: Optional[asyncio.Task] = None
        self._initialized = False

    # --- Lifecycle ---

    async def init(self):
        """
        Load persisted indexes and start background work.

        Indexes younger than `max_disk_age` are loaded for every enabled
        share and get their incremental schedule; artifacts of shares that
        no longer exist are removed.
        """
        if self._initialized:
            return

        await self._persistence.ensure_dir()
        await self.cleanup_orphans()

        loaded = 0
        for share in self.shares.all():
            if not share.enabled:
                continue
            index = await self._persistence.load(share.id)
            if index is not None:
                self._store.publish(share.id, index)
                self._start_tracking(share.id)
                loaded += 1

        if self.config.auto_cleanup:
            loop = asyncio.get_event_loop()
            self._cleanup_task = loop.create_task(self._cleanup_loop())

        self._initialized = True
        logger.info(f"Index registry initialized: {loaded} indexes loaded from disk")

    async def shutdown(self):
        """Stop schedules, watchers and running builds/cycles."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

        await self._scheduler.close()

        if self._watcher:
            self._watcher.stop()

        tasks = self._cancel_work(self._store.share_ids())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._hasher.close()
        self._initialized = False
        logger.info("Index registry shut down")

    # --- Index access ---

    async def get_index(self, share_id: Any, wait: bool = False) -> Optional[ShareIndex]:
        """
        Get the servable index of a share.

        Order: memory, then disk, then a background build. A stale index
        (older than `max_cache_age` since its last update or check) is
        returned as-is while a rebuild runs in the background.

        Args:
            share_id: Share id (int or numeric string)
            wait: Wait for a build started (or running) on this call

        Returns:
            The current ShareIndex, or None while nothing is servable
        """
        share_id = normalize_share_id(share_id)
        self._require_share(share_id)
        state = self._store.state(share_id)

        if state.index is not None:
            if self._is_stale(state) and not state.building and self._retry_due(state):
                logger.info(f"Index for share {share_id} is stale, rebuilding in background")
                self._builder.schedule(share_id)
            return state.index

        if not state.building:
            async with state.lock:
                if state.index is None and not state.building:
                    index = await self._persistence.load(share_id)
                    if index is not None:
                        self._store.publish(share_id, index)
                        self._start_tracking(share_id)
                        return index

        if state.index is not None:
            return state.index

        if state.building:
            task = state.build_task
        elif self._retry_due(state):
            task = self._builder.schedule(share_id)
        else:
            return None

        if wait:
            await asyncio.shield(task)
        return state.index

    async def search(
        self,
        share_id: Any,
        query: str,
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        """
        Search a share by name.

        Never waits for a build: a share with nothing servable answers with
        an empty result carrying the current status.

        Raises:
            InvalidShareIdError: Malformed share id
            ShareNotFoundError: Unknown share
            InvalidSearchOptionsError: Bad filters, sort or pagination
        """
        share_id = normalize_share_id(share_id)
        options = validate_options(options, self.config.default_search_limit)

        index = await self.get_index(share_id)
        status = self._store.state(share_id).metadata.status
        return self._search.search(index, query, options, status)

    async def rebuild_index(self, share_id: Any, wait: bool = False) -> IndexMetadata:
        """
        Drop a share's index (memory and disk) and build it from scratch.

        The incremental schedule is stopped first and restarted once the
        build succeeds. A rebuild requested while one runs joins it.

        Returns:
            Current metadata (Building), or the final metadata with wait=True
        """
        share_id = normalize_share_id(share_id)
        self._require_share(share_id)
        state = self._store.state(share_id)

        if state.building:
            if wait:
                return await asyncio.shield(state.build_task)
            return state.metadata.copy()

        self._stop_tracking(share_id)

        async with state.lock:
            state.generation += 1
            self._store.discard(share_id)
            await self._persistence.delete(share_id)

        logger.info(f"Rebuilding index for share {share_id}")
        task = self._builder.schedule(share_id)
        if wait:
            return await asyncio.shield(task)
        return state.metadata.copy()

    async def delete_index(self, share_id: Any):
        """Remove a share's index from memory and disk and stop its schedule."""
        share_id = normalize_share_id(share_id)
        await self._remove_share(share_id)

    # --- Status ---

    def get_status(self, share_id: Any) -> IndexMetadata:
        share_id = normalize_share_id(share_id)
        state = self._store.get(share_id)
        if state is None:
            return IndexMetadata(share_id=share_id)
        return state.metadata.copy()

    def get_incremental_stats(self, share_id: Any) -> IncrementalStats:
        share_id = normalize_share_id(share_id)
        state = self._store.get(share_id)
        metadata = state.metadata if state else IndexMetadata(share_id=share_id)

        return IncrementalStats(
            share_id=share_id,
            settings=self._settings.effective(share_id),
            scheduled=self._scheduler.is_scheduled(share_id),
            status=metadata.status,
            last_updated_at=metadata.last_updated_at,
            last_incremental_at=metadata.last_incremental_at,
            last_checked_at=state.last_checked_at if state else None,
            last_change_counts=metadata.last_change_counts,
            last_outcome=state.last_outcome if state else None,
        )

    @property
    def incremental_settings(self) -> IncrementalSettings:
        """Global settings (shares without overrides use these)."""
        return self._settings.effective()

    # --- Incremental updates ---

    async def trigger_incremental_update(self, share_id: Any) -> UpdateOutcome:
        """
        Run one incremental cycle now and wait for its outcome.

        Raises:
            IncrementalUpdateDisabledError: Incremental updates are off for the share
            ShareNotFoundError: Unknown share
        """
        share_id = normalize_share_id(share_id)
        self._require_share(share_id)
        if not self._settings.effective(share_id).enabled:
            raise IncrementalUpdateDisabledError(
                f"Incremental updates are disabled for share {share_id}"
            )
        return await self._updater.run_cycle(share_id)

    def configure_incremental_update(
        self,
        enabled: Optional[bool] = None,
        check_interval: Optional[float] = None,
        full_rebuild_threshold: Optional[float] = None,
        share_id: Any = None,
    ) -> IncrementalSettings:
        """
        Change incremental settings and restart the affected schedules.

        Without `share_id` the global settings change and every schedule
        restarts. With it, only that share's overrides change and only its
        schedule restarts; other shares keep running untouched.

        Returns:
            The effective settings (of the share, when one is given)

        Raises:
            ValueError: Non-positive interval or threshold outside [0, 1]
            ShareNotFoundError: `share_id` names an unknown share
        """
        if share_id is not None:
            share_id = normalize_share_id(share_id)
            self._require_share(share_id)
            settings = self._settings.update(
                share_id,
                enabled=enabled,
                check_interval=check_interval,
                full_rebuild_threshold=full_rebuild_threshold,
            )
            self._restart_tracking(share_id)
            scope = f"share {share_id}"
        else:
            validate_incremental_settings(check_interval, full_rebuild_threshold)

            if enabled is not None:
                self.config.enable_incremental_update = bool(enabled)
            if check_interval is not None:
                self.config.incremental_check_interval = float(check_interval)
                self._scheduler.interval = float(check_interval)
            if full_rebuild_threshold is not None:
                self.config.full_rebuild_threshold = float(full_rebuild_threshold)

            for indexed_id in self._store.indexed_share_ids():
                self._restart_tracking(indexed_id)
            settings = self.incremental_settings
            scope = "all shares"

        logger.info(
            f"Incremental updates {'enabled' if settings.enabled else 'disabled'} for {scope}: "
            f"every {settings.check_interval}s, rebuild above {settings.full_rebuild_threshold:.0%}"
        )
        return settings

    # --- Integrity ---

    async def check_integrity(self, share_id: Any) -> IntegrityReport:
        """Compare the artifacts on disk with the in-memory index."""
        share_id = normalize_share_id(share_id)
        state = self._store.get(share_id)
        index = state.index if state else None

        memory_ok = index is not None and index.is_consistent()

        if not self.config.enable_persistence:
            checks = IntegrityChecks(
                memory_index=index is not None,
                memory_hashes=memory_ok,
                consistent=memory_ok,
            )
            recommendation = RepairAction.HEALTHY if memory_ok else RepairAction.REBUILD
            return IntegrityReport(share_id, checks, recommendation)

        report = await self._persistence.inspect(share_id)
        matches_disk = (
            memory_ok
            and report.metadata is not None
            and len(index) == report.entry_count
            and index.metadata.build_id == report.metadata.build_id
        )

        checks = IntegrityChecks(
            index_file=report.entries_valid,
            meta_file=report.meta_readable,
            hash_file=report.hashes_valid,
            memory_index=index is not None,
            memory_hashes=memory_ok,
            consistent=matches_disk,
        )

        error = None
        if not report.meta_readable or not report.entries_valid:
            recommendation = RepairAction.REBUILD
            if report.entries_exists or report.meta_exists:
                error = "index artifacts unreadable or from different saves"
            else:
                error = "no index on disk"
        elif not report.hashes_valid:
            recommendation = RepairAction.REBUILD_HASHES
            error = "fingerprint artifact missing or does not match entries"
        elif index is None:
            recommendation = RepairAction.RELOAD
        elif not matches_disk:
            recommendation = RepairAction.SYNC
            error = "in-memory index differs from disk"
        else:
            recommendation = RepairAction.HEALTHY

        return IntegrityReport(share_id, checks, recommendation, error)

    async def repair(self, share_id: Any) -> IntegrityReport:
        """
        Run the action recommended by check_integrity.

        Returns:
            A fresh integrity report taken after the repair
        """
        share_id = normalize_share_id(share_id)
        report = await self.check_integrity(share_id)
        action = report.recommendation
        if action is RepairAction.HEALTHY:
            return report

        state = self._store.get(share_id)
        if state is not None and state.building:
            logger.info(f"Build running for share {share_id}, repair deferred to it")
            await asyncio.shield(state.build_task)
            return await self.check_integrity(share_id)

        logger.info(f"Repairing index for share {share_id}: {action.value}")

        if action is RepairAction.REBUILD:
            await self.rebuild_index(share_id, wait=True)
        elif action is RepairAction.REBUILD_HASHES:
            if not await self._rebuild_hashes(share_id):
                await self.rebuild_index(share_id, wait=True)
        elif not await self._reload(share_id):
            await self.rebuild_index(share_id, wait=True)

        return await self.check_integrity(share_id)

    async def _rebuild_hashes(self, share_id: int) -> bool:
        state = self._store.state(share_id)
        async with state.lock:
            index = state.index
            if index is None:
                index = await self._persistence.load(share_id, max_age=None)
            if index is None:
                return False

            fingerprints = await self._hasher.fingerprint_entries(index.entries)
            metadata = await self._persistence.save(
                share_id, index.entries, index.metadata.copy(status=IndexStatus.COMPLETED),
                fingerprints,
            )
            self._store.publish(share_id, ShareIndex(
                share_id=share_id,
                entries=list(index.entries),
                fingerprints=fingerprints,
                metadata=metadata,
            ))
        self._start_tracking(share_id)
        return True

    async def _reload(self, share_id: int) -> bool:
        state = self._store.state(share_id)
        async with state.lock:
            index = await self._persistence.load(share_id, max_age=None)
            if index is None:
                return False
            self._store.publish(share_id, index)
        self._start_tracking(share_id)
        return True

    # --- Notifications ---

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register for IndexChangeEvents; returns an unsubscribe callable."""
        return self._notifier.subscribe(observer)

    # --- Housekeeping ---

    async def cleanup_expired(self) -> List[int]:
        """
        Drop indexes (memory and disk) not updated or checked within
        `max_disk_age`.

        Returns:
            Share ids whose index was removed
        """
        removed = []
        now = utcnow()

        for share_id in self._store.indexed_share_ids():
            state = self._store.get(share_id)
            if state is None or state.building or state.cycle_running:
                continue
            reference = self._freshness_reference(state)
            if reference is None or (now - reference).total_seconds() > self.config.max_disk_age:
                await self._remove_share(share_id)
                removed.append(share_id)

        for share_id in await self._persistence.stored_share_ids():
            if share_id in self._store:
                continue
            report = await self._persistence.inspect(share_id)
            updated = report.metadata.last_updated_at if report.metadata else None
            if updated is None or (now - updated).total_seconds() > self.config.max_disk_age:
                await self._persistence.delete(share_id)
                removed.append(share_id)

        if removed:
            logger.info(f"Removed {len(removed)} expired indexes: {removed}")
        return removed

    async def cleanup_orphans(self) -> List[int]:
        """
        Delete indexes of shares the share registry no longer knows.

        Returns:
            Share ids whose artifacts were removed
        """
        known = {share.id for share in self.shares.all()}
        orphans = [sid for sid in await self._persistence.stored_share_ids() if sid not in known]
        orphans.extend(sid for sid in self._store.share_ids() if sid not in known and sid not in orphans)

        for share_id in orphans:
            await self._forget_share(share_id)
        self._settings.retain(known)

        if orphans:
            logger.info(f"Removed {len(orphans)} orphan indexes: {orphans}")
        return orphans

    def clear_memory(self):
        """Stop all schedules and drop every in-memory index (disk untouched)."""
        self._scheduler.stop_all()
        share_ids = self._store.share_ids()
        for share_id in share_ids:
            if self._watcher:
                self._watcher.unwatch(share_id)
        self._cancel_work(share_ids)
        self._store.clear()
        logger.info(f"Cleared {len(share_ids)} in-memory indexes")

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                await self.cleanup_expired()
                await self.cleanup_orphans()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Index cleanup failed: {e}")

    # --- Internals ---

    def _require_share(self, share_id: int) -> ShareDescriptor:
        share = self.shares.get(share_id)
        if share is None:
            raise ShareNotFoundError(share_id)
        return share

    def _freshness_reference(self, state: ShareState):
        """Most recent time the index was known to match the share."""
        updated = state.index.metadata.last_updated_at if state.index else None
        checked = state.last_checked_at
        if updated is None:
            return checked
        if checked is None:
            return updated
        return max(updated, checked)

    def _is_stale(self, state: ShareState) -> bool:
        reference = self._freshness_reference(state)
        if reference is None:
            return True
        return (utcnow() - reference).total_seconds() > self.config.max_cache_age

    def _retry_due(self, state: ShareState) -> bool:
        """Failed builds are retried at most every `failed_retry_interval`."""
        metadata = state.metadata
        if metadata.status is not IndexStatus.FAILED or metadata.last_updated_at is None:
            return True
        age = (utcnow() - metadata.last_updated_at).total_seconds()
        return age >= self.config.failed_retry_interval

    def _start_tracking(self, share_id: int):
        """Start the incremental schedule (and watcher) for a built share."""
        settings = self._settings.effective(share_id)
        if settings.enabled:
            self._scheduler.start(share_id, settings.check_interval)
            if self._watcher:
                share = self.shares.get(share_id)
                if share is not None and share.enabled:
                    self._watcher.watch(share)

    def _stop_tracking(self, share_id: int):
        self._scheduler.stop(share_id)
        if self._watcher:
            self._watcher.unwatch(share_id)

    def _restart_tracking(self, share_id: int):
        self._stop_tracking(share_id)
        if self._store.index(share_id) is not None:
            self._start_tracking(share_id)

    def _cancel_work(self, share_ids: List[int]) -> List[asyncio.Task]:
        """Cancel running builds and cycles, except the calling task."""
        current = asyncio.current_task()
        cancelled = []
        for share_id in share_ids:
            state = self._store.get(share_id)
            if state is None:
                continue
            for task in (state.build_task, state.cycle_task):
                if task is not None and not task.done() and task is not current:
                    task.cancel()
                    cancelled.append(task)
        return cancelled

    async def _remove_share(self, share_id: int):
        self._stop_tracking(share_id)
        self._cancel_work([share_id])

        state = self._store.remove(share_id)
        if state is not None:
            state.generation += 1
            async with state.lock:
                await self._persistence.delete(share_id)
        else:
            await self._persistence.delete(share_id)

        logger.info(f"Removed index for share {share_id}")

    async def _forget_share(self, share_id: int):
        """Remove the index and the overrides of a share that no longer exists."""
        await self._remove_share(share_id)
        self._settings.clear(share_id)

    async def _scheduled_tick(self, share_id: int):
        await self._updater.run_cycle(share_id, periodic=True)

    async def _on_local_change(self, share_id: int):
        if self._settings.effective(share_id).enabled and self._store.index(share_id) is not None:
            await self._updater.run_cycle(share_id)
