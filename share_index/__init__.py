"""
Share Index Package - Search indexing engine for file shares.

Modules:
    - config: Centralized configuration
    - listers: Directory listing for local and SMB shares
    - crawler: Concurrent share traversal
    - hasher: xxHash entry fingerprints
    - changes: Fingerprint-based change detection
    - persistence: Atomic on-disk artifacts
    - builder: Full rebuilds
    - updater: Periodic incremental updates
    - search: Ranked name search
    - watcher: Real-time change detection for local shares
    - registry: Public façade

Index Flow:
    Crawl → Fingerprint (xxHash) → Persist → Publish → Search
              ↑                                 │
              └── Diff → Patch (or Rebuild) ←───┘ every check interval

Usage:
    from share_index import IndexRegistry, StaticShareRegistry

    registry = IndexRegistry(StaticShareRegistry(shares))
    await registry.init()
    result = await registry.search(1, "report")
"""

from .config import IndexConfig
from .listers import StaticShareRegistry
from .models import SearchOptions, ShareDescriptor, ShareType, SmbConnection
from .registry import IndexRegistry

__all__ = [
    "IndexConfig",
    "IndexRegistry",
    "SearchOptions",
    "ShareDescriptor",
    "ShareType",
    "SmbConnection",
    "StaticShareRegistry",
]
