"""
Change Detection - Diff a fresh crawl against the current share index.

Every path of either snapshot lands in exactly one bucket: unchanged,
added, modified (fingerprint differs) or deleted. Paths below a directory
the crawl could not list are unknown, not deleted, and are left alone.
"""

import logging

from .models import ChangeSet, CrawlResult, ShareIndex


logger = logging.getLogger(__name__)


class ChangeDetector:
    """Fingerprint-based snapshot differ."""

    def detect(self, previous: ShareIndex, fresh: CrawlResult) -> ChangeSet:
        """
        Classify paths of `fresh` against `previous`.

        Added and modified carry the fresh entries; deleted carries the
        paths that disappeared, in the previous index's order.
        Entries under `fresh.failed_dirs` are never reported deleted.
        """
        changes = ChangeSet()
        old = previous.fingerprints

        for entry in fresh.entries:
            old_fingerprint = old.get(entry.path)
            if old_fingerprint is None:
                changes.added.append(entry)
            elif old_fingerprint != fresh.fingerprints.get(entry.path, entry.fingerprint):
                changes.modified.append(entry)

        unknown = tuple(d.rstrip("/") + "/" for d in fresh.failed_dirs)
        for entry in previous.entries:
            if entry.path in fresh.fingerprints:
                continue
            if unknown and entry.path.startswith(unknown):
                continue
            changes.deleted.append(entry.path)

        logger.debug(
            f"Change detection for share {previous.share_id}: "
            f"{len(changes.added)} added, {len(changes.modified)} modified, "
            f"{len(changes.deleted)} deleted"
        )
        return changes

    @staticmethod
    def requires_full_rebuild(changes: ChangeSet, previous_count: int, threshold: float) -> bool:
        """Large deltas are cheaper to rebuild than to patch."""
        return changes.change_ratio(previous_count) > threshold
