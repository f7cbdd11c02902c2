"""
Index Builder - Full rebuild of a share index.

Build flow:
    Building → Crawl (FULL) → Persist → Publish → Completed
                           ↘ any failure → Failed (previous index kept)

The new index is persisted before it replaces the live one, so a crash
mid-build never destroys the last good index on disk or in memory.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from .config import IndexConfig
from .crawler import Crawler
from .errors import ShareDisabledError, ShareNotFoundError
from .events import ChangeNotifier
from .listers import ShareRegistry
from .models import (
    CrawlMode, IndexChangeEvent, IndexMetadata, IndexStatus, ShareDescriptor,
    ShareIndex, utcnow,
)
from .persistence import PersistenceManager
from .store import IndexStore, ShareState


logger = logging.getLogger(__name__)


def build_progress(entry_count: int) -> int:
    """Progress percentage while crawling (size of the tree is unknown)."""
    if entry_count <= 0:
        return 0
    return min(95, int(entry_count / max(entry_count, 1000) * 90))


class IndexBuilder:
    """
    Runs full rebuilds, at most one per share at a time.

    `on_built` is called with the share id after every successful build
    (the registry uses it to restart the incremental schedule).
    """

    def __init__(
        self,
        store: IndexStore,
        shares: ShareRegistry,
        crawler: Crawler,
        persistence: PersistenceManager,
        notifier: ChangeNotifier,
        config: IndexConfig | None = None,
    ):
        self.config = config or IndexConfig()
        self._store = store
        self._shares = shares
        self._crawler = crawler
        self._persistence = persistence
        self._notifier = notifier
        self.on_built: Optional[Callable[[int], None]] = None

    def schedule(self, share_id: int) -> asyncio.Task:
        """
        Start a rebuild in the background.

        Concurrent requests for the same share get the running build.
        """
        state = self._store.state(share_id)
        if state.building:
            return state.build_task

        previous = state.index
        state.generation += 1
        state.metadata = IndexMetadata(
            status=IndexStatus.BUILDING,
            progress=0,
            total_files=len(previous) if previous else 0,
            share_id=share_id,
            last_updated_at=utcnow(),
        )

        loop = asyncio.get_event_loop()
        state.build_task = loop.create_task(self._build(state, previous))
        return state.build_task

    async def build(self, share_id: int) -> IndexMetadata:
        """Rebuild and wait for the result (never raises on build failure)."""
        return await asyncio.shield(self.schedule(share_id))

    def _require_share(self, share_id: int) -> ShareDescriptor:
        share = self._shares.get(share_id)
        if share is None:
            raise ShareNotFoundError(share_id)
        if not share.enabled:
            raise ShareDisabledError(share_id)
        return share

    def _report_progress(self, state: ShareState, entry_count: int):
        if state.metadata.status is IndexStatus.BUILDING:
            state.metadata.progress = build_progress(entry_count)
            state.metadata.total_files = entry_count

    async def _build(self, state: ShareState, previous: Optional[ShareIndex]) -> IndexMetadata:
        share_id = state.share_id
        start_time = time.monotonic()

        logger.info(f"Building index for share {share_id}")

        try:
            share = self._require_share(share_id)
            result = await self._crawler.crawl(
                share,
                CrawlMode.FULL,
                progress=lambda count: self._report_progress(state, count),
            )

            metadata = IndexMetadata(
                status=IndexStatus.COMPLETED,
                progress=100,
                total_files=len(result.entries),
                last_updated_at=utcnow(),
                build_duration_ms=int((time.monotonic() - start_time) * 1000),
                share_id=share_id,
            )

            async with state.lock:
                metadata = await self._persistence.save(
                    share_id, result.entries, metadata, result.fingerprints
                )
                self._store.publish(share_id, ShareIndex(
                    share_id=share_id,
                    entries=result.entries,
                    fingerprints=result.fingerprints,
                    metadata=metadata,
                ))
                state.last_checked_at = None
                state.last_full_scan_at = utcnow()

        except asyncio.CancelledError:
            logger.info(f"Build for share {share_id} cancelled")
            state.metadata = previous.metadata if previous else IndexMetadata(share_id=share_id)
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.error(f"Index build failed for share {share_id}: {e}")
            failed = dict(
                status=IndexStatus.FAILED,
                progress=0,
                last_updated_at=utcnow(),
                build_duration_ms=duration_ms,
                share_id=share_id,
                error=str(e),
            )
            if previous is not None:
                # Incremental history of the servable index survives a failed rebuild
                state.metadata = previous.metadata.copy(total_files=len(previous), **failed)
            else:
                state.metadata = IndexMetadata(total_files=0, **failed)
            return state.metadata

        logger.info(
            f"Index built for share {share_id}: {metadata.total_files} entries "
            f"in {metadata.build_duration_ms} ms"
        )

        self._notifier.publish(IndexChangeEvent(
            share_id=share_id,
            kind="rebuild",
            added=metadata.total_files,
            modified=0,
            deleted=0,
            total_files=metadata.total_files,
        ))

        if self.on_built:
            self.on_built(share_id)

        return metadata
