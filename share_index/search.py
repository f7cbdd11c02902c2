"""
Search - Ranked name search over a share index.

Scoring per entry (additive):
    exact name match           +100
    name starts with query     +50   (only if not exact)
    name contains query        +20   (only if neither of the above)
    each query token in name   +30
    query in parent path       +10
    file that matched at all   +5

The parent path bonus is an extension on top of the name rules: it lets a
query naming a folder surface the entries inside it (searching "invoices"
ranks /invoices/2024.pdf), while keeping those hits below any name match.

Entries scoring 0 are dropped. Search is synchronous: it only reads the
immutable snapshot it was given.
"""

import logging
import time
from dataclasses import replace
from typing import List, Optional, Sequence

from .errors import InvalidSearchOptionsError
from .models import (
    EntryKind, IndexEntry, IndexStatus, SearchHit, SearchOptions, SearchResult,
    ShareIndex,
)
from .tokenizer import tokenize


logger = logging.getLogger(__name__)

SORT_FIELDS = {"relevance", "name", "size", "modified"}
SORT_ALIASES = {"modifiedAt": "modified", "modified_at": "modified", "mtime": "modified"}
SORT_ORDERS = {"asc", "desc"}
KINDS = {None, "all", "file", "directory"}


def normalize_extension(extension: str) -> str:
    extension = extension.strip().lower()
    if extension and not extension.startswith("."):
        extension = "." + extension
    return extension


def validate_options(options: Optional[SearchOptions], default_limit: int = 100) -> SearchOptions:
    """
    Check search options and return a normalized copy.

    Raises:
        InvalidSearchOptionsError: On an unknown kind, sort field or order,
            or a negative offset / non-positive limit
    """
    if options is None:
        return SearchOptions(limit=default_limit)

    kind = options.kind.lower() if isinstance(options.kind, str) else options.kind
    if kind not in KINDS:
        raise InvalidSearchOptionsError(f"Unknown entry type filter: {options.kind!r}")

    sort_by = SORT_ALIASES.get(options.sort_by, options.sort_by)
    if sort_by not in SORT_FIELDS:
        raise InvalidSearchOptionsError(f"Unknown sort field: {options.sort_by!r}")

    sort_order = (options.sort_order or "desc").lower()
    if sort_order not in SORT_ORDERS:
        raise InvalidSearchOptionsError(f"Unknown sort order: {options.sort_order!r}")

    if not isinstance(options.limit, int) or options.limit < 1:
        raise InvalidSearchOptionsError(f"limit must be a positive integer, got {options.limit!r}")
    if not isinstance(options.offset, int) or options.offset < 0:
        raise InvalidSearchOptionsError(f"offset must be >= 0, got {options.offset!r}")

    extensions = [normalize_extension(e) for e in options.extensions or []]

    return replace(
        options,
        kind=None if kind == "all" else kind,
        sort_by=sort_by,
        sort_order=sort_order,
        extensions=[e for e in extensions if e],
    )


def score_entry(entry: IndexEntry, query: str, query_tokens: Sequence[str]) -> int:
    """Relevance of one entry for a lowercased query."""
    name = entry.name.lower()
    score = 0

    if name == query:
        score += 100
    elif name.startswith(query):
        score += 50
    elif query in name:
        score += 20

    if query_tokens:
        tokens = set(entry.search_tokens)
        score += 30 * sum(1 for token in query_tokens if token in tokens)

    if query in entry.parent_path.lower():
        score += 10

    if score and entry.kind is EntryKind.FILE:
        score += 5

    return score


class SearchEngine:
    """Scores, filters, sorts and paginates entries of a ShareIndex."""

    def __init__(self, default_limit: int = 100):
        self.default_limit = default_limit

    def search(
        self,
        index: Optional[ShareIndex],
        query: str,
        options: Optional[SearchOptions] = None,
        status: IndexStatus = IndexStatus.COMPLETED,
    ) -> SearchResult:
        """
        Search one share index.

        Args:
            index: Snapshot to search (None: nothing servable yet)
            query: Free text, matched case-insensitively against names
            options: Filters, ordering and pagination
            status: Index status reported back with the result

        Returns:
            SearchResult with `total` counted before pagination
        """
        options = validate_options(options, self.default_limit)
        query = (query or "").strip().lower()
        if index is None or not query:
            return SearchResult.empty(options, status)

        start_time = time.perf_counter()
        query_tokens = tokenize(query)
        extensions = set(options.extensions)

        hits: List[SearchHit] = []
        for entry in index.entries:
            if options.kind == "file" and entry.kind is not EntryKind.FILE:
                continue
            if options.kind == "directory" and entry.kind is not EntryKind.DIRECTORY:
                continue
            if extensions and entry.kind is EntryKind.FILE and entry.extension not in extensions:
                continue

            relevance = score_entry(entry, query, query_tokens)
            if relevance > 0:
                hits.append(SearchHit(entry=entry, relevance=relevance))

        self._sort(hits, options)

        total = len(hits)
        page = hits[options.offset:options.offset + options.limit]
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        logger.debug(
            f"Search {query!r} in share {index.share_id}: {total} hits in {elapsed_ms:.1f} ms"
        )

        return SearchResult(
            results=page,
            total=total,
            elapsed_ms=elapsed_ms,
            limit=options.limit,
            offset=options.offset,
            status=status,
        )

    @staticmethod
    def _sort(hits: List[SearchHit], options: SearchOptions):
        # list.sort is stable in both directions, so ties keep index order
        reverse = options.sort_order == "desc"
        if options.sort_by == "name":
            hits.sort(key=lambda h: h.entry.name.casefold(), reverse=reverse)
        elif options.sort_by == "size":
            hits.sort(key=lambda h: h.entry.size, reverse=reverse)
        elif options.sort_by == "modified":
            hits.sort(key=lambda h: h.entry.modified_at, reverse=reverse)
        else:
            hits.sort(key=lambda h: h.relevance, reverse=reverse)
