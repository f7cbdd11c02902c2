"""
Crawler - Concurrent share traversal producing index snapshots.

Walks a share through its DirectoryLister, building IndexEntry objects
(tokens and fingerprint included) as it goes. Directory entries are
visited in bounded batches and concurrent listing calls are capped by a
semaphore, so a wide tree never fans out without limit.

A DIFF crawl given the previous index only descends into directories
whose fingerprint changed. The descendants of an unchanged directory are
copied from the previous index without listing it. Directory mtimes only
move when direct children are added, removed or renamed, so callers
should run a complete walk (no previous index) every so often.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import IndexConfig
from .errors import CrawlError, ErrorAction, handle_error
from .hasher import fingerprint
from .listers import DirectoryLister, ListerFactory
from .models import (
    CrawlMode, CrawlResult, EntryKind, IndexEntry, ListedEntry, ShareDescriptor,
    ShareIndex,
)
from .tokenizer import tokenize


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def join_path(parent: str, name: str) -> str:
    """Join a share-relative directory and a child name."""
    return f"{parent.rstrip('/')}/{name}"


def build_entry(listed: ListedEntry, parent_path: str, depth: int) -> IndexEntry:
    """Turn a lister result into an IndexEntry (tokens and fingerprint included)."""
    path = join_path(parent_path, listed.name)
    inode = listed.extra.get("inode")
    is_file = listed.kind is EntryKind.FILE

    extension = None
    if is_file:
        dot = listed.name.rfind(".")
        extension = listed.name[dot:].lower() if dot > 0 else ""

    size = max(0, int(listed.size or 0)) if is_file else 0

    return IndexEntry(
        path=path,
        name=listed.name,
        kind=listed.kind,
        size=size,
        modified_at=listed.modified_at,
        extension=extension,
        depth=depth,
        parent_path=parent_path,
        search_tokens=tokenize(listed.name),
        fingerprint=fingerprint(path, size, listed.modified_at, listed.kind, inode),
        inode=inode,
    )


@dataclass
class _CrawlRun:
    """Mutable state of one crawl."""
    share: ShareDescriptor
    lister: DirectoryLister
    mode: CrawlMode
    semaphore: asyncio.Semaphore
    progress: Optional[ProgressCallback]
    entries: List[IndexEntry] = field(default_factory=list)
    fingerprints: Dict[str, str] = field(default_factory=dict)
    directories: int = 0
    skipped: int = 0
    errors: int = 0
    truncated: bool = False
    failed_dirs: List[str] = field(default_factory=list)
    reused_dirs: List[str] = field(default_factory=list)
    previous_fingerprints: Dict[str, str] = field(default_factory=dict)
    previous_children: Dict[str, List[IndexEntry]] = field(default_factory=dict)


class Crawler:
    """
    Share crawler.

    Yields a CrawlResult containing every reachable entry down to
    `config.max_depth`. Unreadable directories and entries are skipped;
    only an unreadable share root fails the crawl.
    """

    def __init__(self, lister_factory: ListerFactory, config: IndexConfig | None = None):
        self.config = config or IndexConfig()
        self._lister_factory = lister_factory

    async def crawl(
        self,
        share: ShareDescriptor,
        mode: CrawlMode = CrawlMode.FULL,
        progress: Optional[ProgressCallback] = None,
        previous: Optional[ShareIndex] = None,
    ) -> CrawlResult:
        """
        Crawl a share.

        Args:
            share: Share to walk
            mode: FULL reports progress, DIFF only produces the latest state
            progress: Called with the number of entries found so far (FULL only)
            previous: Index whose unchanged directories are reused (DIFF only)

        Returns:
            CrawlResult with entries and their fingerprints

        Raises:
            CrawlError: The share root could not be listed
        """
        lister = self._lister_factory(share)
        concurrency = lister.max_concurrency or self.config.list_concurrency

        run = _CrawlRun(
            share=share,
            lister=lister,
            mode=mode,
            semaphore=asyncio.Semaphore(concurrency),
            progress=progress if mode is CrawlMode.FULL else None,
        )

        if previous is not None and mode is CrawlMode.DIFF:
            run.previous_fingerprints = previous.fingerprints
            for entry in previous.entries:
                run.previous_children.setdefault(entry.parent_path, []).append(entry)

        start_time = time.monotonic()

        try:
            async with run.semaphore:
                root_items = await lister.list(share, "/")
        except Exception as e:
            handle_error(e, "/", f"share {share.id}")
            raise CrawlError(f"Cannot list root of share {share.id}: {e}") from e

        run.directories = 1
        await self._visit_items(run, "/", 0, root_items)

        duration = time.monotonic() - start_time
        result = CrawlResult(
            entries=run.entries,
            fingerprints=run.fingerprints,
            directories=run.directories,
            skipped=run.skipped,
            errors=run.errors,
            truncated=run.truncated,
            duration_seconds=duration,
            failed_dirs=run.failed_dirs,
            reused_dirs=run.reused_dirs,
        )

        level = logging.INFO if mode is CrawlMode.FULL else logging.DEBUG
        logger.log(
            level,
            f"Crawled share {share.id} ({mode.value}): {len(result.entries)} entries, "
            f"{result.directories} directories, {len(result.reused_dirs)} unchanged, "
            f"{result.errors} errors in {duration:.1f}s"
        )
        return result

    async def _walk(self, run: _CrawlRun, relative_path: str, depth: int):
        """List one directory and visit its children."""
        if depth > self.config.max_depth:
            return

        try:
            async with run.semaphore:
                items = await run.lister.list(run.share, relative_path)
        except Exception as e:
            run.errors += 1
            action = handle_error(e, relative_path, "list_directory")
            if action is ErrorAction.ABORT:
                raise CrawlError(f"Crawl of share {run.share.id} aborted: {e}") from e
            run.failed_dirs.append(relative_path)
            return

        run.directories += 1
        await self._visit_items(run, relative_path, depth, items)

    async def _visit_items(
        self,
        run: _CrawlRun,
        relative_path: str,
        depth: int,
        items: List[ListedEntry],
    ):
        """Visit directory children in bounded batches."""
        batch_size = max(1, self.config.batch_size)

        for i in range(0, len(items), batch_size):
            batch = items[i:i + batch_size]
            await asyncio.gather(*[
                self._visit(run, relative_path, depth, item) for item in batch
            ])

        if run.progress:
            run.progress(len(run.entries))

    async def _visit(self, run: _CrawlRun, parent_path: str, depth: int, item: ListedEntry):
        if item.name in self.config.skip_names:
            run.skipped += 1
            return

        if self._full(run):
            return

        try:
            entry = build_entry(item, parent_path, depth)
        except Exception as e:
            run.errors += 1
            handle_error(e, join_path(parent_path, item.name), "build_entry")
            return

        if entry.path in run.fingerprints:
            return
        run.entries.append(entry)
        run.fingerprints[entry.path] = entry.fingerprint

        if entry.kind is EntryKind.DIRECTORY:
            if run.previous_fingerprints.get(entry.path) == entry.fingerprint:
                self._reuse_subtree(run, entry.path)
            else:
                await self._walk(run, entry.path, depth + 1)

    def _reuse_subtree(self, run: _CrawlRun, directory: str):
        """Copy the previous descendants of an unchanged directory."""
        run.reused_dirs.append(directory)
        pending = [directory]
        while pending:
            parent = pending.pop()
            for entry in run.previous_children.get(parent, ()):
                if entry.path in run.fingerprints:
                    continue
                if self._full(run):
                    return
                run.entries.append(entry)
                run.fingerprints[entry.path] = run.previous_fingerprints.get(
                    entry.path, entry.fingerprint
                )
                if entry.kind is EntryKind.DIRECTORY:
                    pending.append(entry.path)

    def _full(self, run: _CrawlRun) -> bool:
        if len(run.entries) < self.config.max_index_size:
            return False
        if not run.truncated:
            logger.warning(
                f"Share {run.share.id} reached max index size "
                f"({self.config.max_index_size}), remaining entries skipped"
            )
        run.truncated = True
        return True
