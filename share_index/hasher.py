"""
Hasher - Entry fingerprints using xxHash.

A fingerprint summarizes the identity-affecting attributes of an entry
(path, size, mtime, kind and inode when known). It never reads file
content: an edit that keeps both size and mtime is not detected.
"""

import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import xxhash

from .models import EntryKind, IndexEntry


logger = logging.getLogger(__name__)

BATCH_SIZE = 2000


def fingerprint(
    path: str,
    size: int,
    modified_at: datetime,
    kind: EntryKind,
    inode: Optional[int] = None,
) -> str:
    """
    Compute the fingerprint for one entry's identity fields.

    Deterministic for identical input; mtime is taken at millisecond
    precision so a value survives a persistence round trip.
    """
    data = {
        "path": path,
        "size": size,
        "modified": int(round(modified_at.timestamp() * 1000)),
        "type": kind.value,
    }
    if inode:
        data["inode"] = inode

    payload = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return xxhash.xxh64(payload.encode("utf-8")).hexdigest()


def fingerprint_entry(entry: IndexEntry) -> str:
    return fingerprint(
        entry.path, entry.size, entry.modified_at, entry.kind, entry.inode
    )


def fingerprint_map(entries: Iterable[IndexEntry]) -> Dict[str, str]:
    """Recompute the path -> fingerprint map for a list of entries."""
    return {entry.path: fingerprint_entry(entry) for entry in entries}


class Hasher:
    """
    Batch fingerprinting off the event loop.

    Used when a large index needs its fingerprint map reconstructed
    (missing or damaged fingerprint artifact).
    """

    def __init__(self, max_workers: int = 4):
        self.max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="hasher"
            )
        return self._executor

    async def fingerprint_entries(self, entries: List[IndexEntry]) -> Dict[str, str]:
        """
        Fingerprint entries in parallel batches.

        Returns:
            Mapping of entry path to fingerprint
        """
        if not entries:
            return {}

        loop = asyncio.get_event_loop()
        executor = self._get_executor()

        batches = [
            entries[i:i + BATCH_SIZE]
            for i in range(0, len(entries), BATCH_SIZE)
        ]
        tasks = [
            loop.run_in_executor(executor, fingerprint_map, batch)
            for batch in batches
        ]

        fingerprints: Dict[str, str] = {}
        for partial in await asyncio.gather(*tasks):
            fingerprints.update(partial)

        logger.info(f"Fingerprinted {len(fingerprints)} entries in {len(batches)} batches")
        return fingerprints

    def close(self):
        """Shutdown the thread pool."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
