"""
Watcher - Filesystem events for local shares.

Uses watchdog to notice changes under local share roots and debounces
them per share: a burst of events becomes one incremental update once the
share has been quiet for `watch_debounce_ms`. SMB shares are not watched;
they rely on the periodic cycle.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .config import IndexConfig
from .models import ShareDescriptor, ShareType


logger = logging.getLogger(__name__)


class ShareWatcher:
    """
    watchdog observer shared by all watched local shares.

    Observer callbacks run on the observer thread; they only hand the path
    over to the event loop, where pending changes and flush timers live.
    """

    def __init__(
        self,
        config: IndexConfig | None = None,
        on_change: Optional[Callable[[int], Awaitable[Any]]] = None,
    ):
        self.config = config or IndexConfig()
        self.on_change = on_change

        self._observer = None
        self._watches: Dict[int, Any] = {}
        self._pending: Dict[int, Set[str]] = {}
        self._flush_tasks: Dict[int, asyncio.Task] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self):
        """Start the observer thread (no shares are watched yet)."""
        if self._observer is not None:
            return

        try:
            from watchdog.observers import Observer
        except ImportError:
            logger.error("watchdog not installed. Run: pip install watchdog")
            raise

        self._loop = asyncio.get_event_loop()
        self._observer = Observer()
        self._observer.start()
        logger.info("Share watcher started")

    def watch(self, share: ShareDescriptor) -> bool:
        """
        Watch a local share's root recursively.

        Returns:
            True if the share is now watched
        """
        if share.type is not ShareType.LOCAL:
            return False
        if share.id in self._watches:
            return True

        root = Path(share.root).expanduser()
        if not root.is_dir():
            logger.warning(f"Watch root not found for share {share.id}: {root}")
            return False

        self.start()

        from watchdog.events import FileSystemEvent, FileSystemEventHandler

        watcher = self
        share_id = share.id

        class EventHandler(FileSystemEventHandler):
            def on_created(self, event: FileSystemEvent):
                watcher._queue_change(share_id, event.src_path)

            def on_modified(self, event: FileSystemEvent):
                # Directory mtime bumps are covered by their children's events
                if not event.is_directory:
                    watcher._queue_change(share_id, event.src_path)

            def on_deleted(self, event: FileSystemEvent):
                watcher._queue_change(share_id, event.src_path)

            def on_moved(self, event: FileSystemEvent):
                watcher._queue_change(share_id, event.dest_path)

        self._watches[share_id] = self._observer.schedule(EventHandler(), str(root), recursive=True)
        logger.info(f"Watching share {share_id}: {root}")
        return True

    def unwatch(self, share_id: int):
        watch = self._watches.pop(share_id, None)
        if watch is not None and self._observer is not None:
            self._observer.unschedule(watch)
            logger.info(f"Stopped watching share {share_id}")

        self._pending.pop(share_id, None)
        task = self._flush_tasks.pop(share_id, None)
        if task and not task.done():
            task.cancel()

    def is_watching(self, share_id: int) -> bool:
        return share_id in self._watches

    def stop(self):
        """Stop the observer and drop pending changes."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None

        for task in self._flush_tasks.values():
            if not task.done():
                task.cancel()

        self._flush_tasks.clear()
        self._pending.clear()
        self._watches.clear()
        logger.info("Share watcher stopped")

    def _queue_change(self, share_id: int, path: str):
        """Queue a change for debounced processing (any thread)."""
        if self._should_skip(Path(path)):
            return
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._add_pending, share_id, path)

    def _add_pending(self, share_id: int, path: str):
        self._pending.setdefault(share_id, set()).add(path)

        # Every new event restarts the quiet period
        task = self._flush_tasks.get(share_id)
        if task and not task.done():
            task.cancel()
        self._flush_tasks[share_id] = self._loop.create_task(self._flush_after_delay(share_id))

    async def _flush_after_delay(self, share_id: int):
        await asyncio.sleep(self.config.watch_debounce_ms / 1000.0)

        paths = self._pending.pop(share_id, set())
        self._flush_tasks.pop(share_id, None)
        if not paths:
            return

        logger.info(f"Share {share_id}: {len(paths)} filesystem changes, updating index")

        if self.on_change:
            try:
                await self.on_change(share_id)
            except Exception as e:
                logger.error(f"Change handler error for share {share_id}: {e}")

    def _should_skip(self, path: Path) -> bool:
        """Check if a path should be ignored."""
        if path.name in self.config.skip_names:
            return True

        # Our own artifacts, when the index directory lives inside a share
        try:
            path.relative_to(self.config.index_dir)
            return True
        except ValueError:
            pass

        return False

    def get_pending_count(self, share_id: Optional[int] = None) -> int:
        """Get number of pending changed paths."""
        if share_id is not None:
            return len(self._pending.get(share_id, ()))
        return sum(len(paths) for paths in self._pending.values())
