"""
Index Configuration - Settings for the share indexing engine.

Uses environment variables with sensible defaults. The process entry point
builds one config and passes it to the IndexRegistry; every component
receives it from there.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Set


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class IndexConfig:
    """
    Configuration for the indexing engine.

    Durations are in seconds unless the field name says otherwise.
    Concurrency limits are tuned for a NAS-style deployment where SMB
    servers reject aggressive parallel listing.
    """

    # --- Persistence ---
    index_dir: Path = field(
        default_factory=lambda: Path.home() / ".share-index" / "indexes"
    )
    enable_persistence: bool = True

    # --- Incremental updates ---
    enable_incremental_update: bool = True
    incremental_check_interval: float = 120.0
    full_rebuild_threshold: float = 0.30
    full_scan_interval: float = 30 * 60  # Max age of a complete walk before a cycle redoes one

    # --- Freshness ---
    max_cache_age: float = 300.0         # Stale-on-read background rebuild
    max_disk_age: float = 24 * 60 * 60   # Older artifacts are rebuilt, not loaded
    failed_retry_interval: float = 60.0  # Min delay before retrying a failed first build

    # --- Crawling ---
    batch_size: int = 100
    max_depth: int = 20
    list_concurrency: int = 16   # Parallel directory listings (local)
    smb_concurrency: int = 3     # Parallel directory listings per SMB share
    max_index_size: int = 1_000_000

    skip_names: Set[str] = field(default_factory=lambda: {
        ".DS_Store", "Thumbs.db", "desktop.ini",
    })

    # --- Housekeeping ---
    auto_cleanup: bool = True
    cleanup_interval: float = 30 * 60

    # --- Watcher ---
    watch_local_shares: bool = False
    watch_debounce_ms: int = 2000

    # --- Search ---
    default_search_limit: int = 100

    def __post_init__(self):
        """Ensure the index directory is an absolute path."""
        self.index_dir = Path(self.index_dir).expanduser().resolve()

    @classmethod
    def from_env(cls) -> "IndexConfig":
        """
        Create config from environment variables.

        Supported env vars:
            SHARE_INDEX_DIR: Directory holding the persisted artifacts
            SHARE_INDEX_PERSISTENCE: Enable disk persistence (true/false)
            SHARE_INDEX_INCREMENTAL: Enable periodic incremental updates
            SHARE_INDEX_CHECK_INTERVAL: Seconds between incremental cycles
            SHARE_INDEX_REBUILD_THRESHOLD: Change ratio forcing a full rebuild
            SHARE_INDEX_FULL_SCAN_INTERVAL: Seconds between complete walks in cycles
            SHARE_INDEX_MAX_CACHE_AGE: Seconds before a read triggers a rebuild
            SHARE_INDEX_MAX_DISK_AGE: Seconds before disk artifacts are ignored
            SHARE_INDEX_BATCH_SIZE: Entries visited per crawl batch
            SHARE_INDEX_SMB_CONCURRENCY: Parallel SMB directory listings
            SHARE_INDEX_WATCH: Watch local shares for changes
        """
        config = cls()

        if index_dir := os.environ.get("SHARE_INDEX_DIR"):
            config.index_dir = Path(index_dir)

        if persistence := os.environ.get("SHARE_INDEX_PERSISTENCE"):
            config.enable_persistence = _env_bool(persistence)

        if incremental := os.environ.get("SHARE_INDEX_INCREMENTAL"):
            config.enable_incremental_update = _env_bool(incremental)

        if interval := os.environ.get("SHARE_INDEX_CHECK_INTERVAL"):
            config.incremental_check_interval = float(interval)

        if threshold := os.environ.get("SHARE_INDEX_REBUILD_THRESHOLD"):
            config.full_rebuild_threshold = float(threshold)

        if full_scan := os.environ.get("SHARE_INDEX_FULL_SCAN_INTERVAL"):
            config.full_scan_interval = float(full_scan)

        if cache_age := os.environ.get("SHARE_INDEX_MAX_CACHE_AGE"):
            config.max_cache_age = float(cache_age)

        if disk_age := os.environ.get("SHARE_INDEX_MAX_DISK_AGE"):
            config.max_disk_age = float(disk_age)

        if batch := os.environ.get("SHARE_INDEX_BATCH_SIZE"):
            config.batch_size = int(batch)

        if smb := os.environ.get("SHARE_INDEX_SMB_CONCURRENCY"):
            config.smb_concurrency = int(smb)

        if watch := os.environ.get("SHARE_INDEX_WATCH"):
            config.watch_local_shares = _env_bool(watch)

        config.__post_init__()
        return config
