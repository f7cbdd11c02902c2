"""
Data Models - Type definitions for the share indexing engine.

These dataclasses represent the data flowing between the crawler, the
change detector, persistence and search, ensuring clear interfaces
between modules.
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EntryKind(Enum):
    """Type of filesystem object."""
    FILE = "file"
    DIRECTORY = "directory"


class ShareType(Enum):
    """Backing store of a share."""
    LOCAL = "local"
    SMB = "smb"


class IndexStatus(Enum):
    """Lifecycle of a share index."""
    NOT_BUILT = "not_built"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"


class CrawlMode(Enum):
    """FULL feeds a rebuild (reports progress), DIFF feeds change detection."""
    FULL = "full"
    DIFF = "diff"


class RepairAction(Enum):
    """Remediation recommended by an integrity check."""
    REBUILD = "rebuild"
    REBUILD_HASHES = "rebuild_hashes"
    RELOAD = "reload"
    SYNC = "sync"
    HEALTHY = "healthy"


class OutcomeKind(Enum):
    """What an incremental cycle ended up doing."""
    INCREMENTAL = "incremental"
    FULL_REBUILD = "full_rebuild"
    NO_CHANGES = "no_changes"
    SKIPPED = "skipped"
    SUPERSEDED = "superseded"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Shares
# ---------------------------------------------------------------------------

@dataclass
class SmbConnection:
    """Connection info for an SMB export."""
    server: str
    share_name: str
    username: Optional[str] = None
    password: Optional[str] = None
    domain: str = "WORKGROUP"
    port: int = 445

    def unc_path(self, root: str, relative_path: str) -> str:
        """Build the UNC path for a share-relative directory."""
        parts = [self.server, self.share_name]
        parts.extend(p for p in root.replace("\\", "/").split("/") if p)
        parts.extend(p for p in relative_path.split("/") if p)
        return "\\\\" + "\\".join(parts)


@dataclass
class ShareDescriptor:
    """
    A configured share as seen by the indexing engine.

    For local shares `root` is a directory on this host; for SMB shares it
    is the directory inside the export that acts as the share root.
    """
    id: int
    name: str
    type: ShareType
    root: str
    enabled: bool = True
    smb: Optional[SmbConnection] = None


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

@dataclass
class ListedEntry:
    """One child of a directory, as reported by a DirectoryLister."""
    name: str
    kind: EntryKind
    size: int
    modified_at: datetime
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IndexEntry:
    """
    A single indexed filesystem object.

    Entries are immutable, so copying an entry list is enough to get an
    independent snapshot of a share index.
    """
    path: str                     # "/docs/b.pdf", unique within a share
    name: str
    kind: EntryKind
    size: int
    modified_at: datetime
    extension: Optional[str]      # ".pdf", "" without suffix, None for directories
    depth: int
    parent_path: str              # "/" for root children
    search_tokens: Tuple[str, ...]
    fingerprint: str
    inode: Optional[int] = None

    @property
    def is_file(self) -> bool:
        return self.kind is EntryKind.FILE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "type": self.kind.value,
            "size": self.size,
            "modified": _dt_to_str(self.modified_at),
            "extension": self.extension,
            "depth": self.depth,
            "parentPath": self.parent_path,
            "nameWords": list(self.search_tokens),
            "hash": self.fingerprint,
            "inode": self.inode,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexEntry":
        return cls(
            path=data["path"],
            name=data["name"],
            kind=EntryKind(data["type"]),
            size=int(data.get("size") or 0),
            modified_at=_dt_from_str(data["modified"]),
            extension=data.get("extension"),
            depth=int(data.get("depth") or 0),
            parent_path=data.get("parentPath", "/"),
            search_tokens=tuple(data.get("nameWords") or ()),
            fingerprint=data.get("hash", ""),
            inode=data.get("inode"),
        )


# ---------------------------------------------------------------------------
# Index state
# ---------------------------------------------------------------------------

@dataclass
class ChangeCounts:
    """Number of entries touched by one incremental apply."""
    added: int = 0
    modified: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.added + self.modified + self.deleted


@dataclass
class IndexMetadata:
    """Status and bookkeeping for one share index."""
    status: IndexStatus = IndexStatus.NOT_BUILT
    progress: int = 0
    total_files: int = 0
    last_updated_at: Optional[datetime] = None
    last_incremental_at: Optional[datetime] = None
    last_change_counts: Optional[ChangeCounts] = None
    build_duration_ms: int = 0
    share_id: Optional[int] = None
    build_id: Optional[str] = None
    incremental: bool = False
    error: Optional[str] = None
    index_version: str = "1.1"

    def copy(self, **changes) -> "IndexMetadata":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "progress": self.progress,
            "totalFiles": self.total_files,
            "lastUpdated": _dt_to_str(self.last_updated_at),
            "lastIncrementalUpdate": _dt_to_str(self.last_incremental_at),
            "changesApplied": (
                asdict(self.last_change_counts) if self.last_change_counts else None
            ),
            "buildDuration": self.build_duration_ms,
            "shareId": self.share_id,
            "buildId": self.build_id,
            "incrementalUpdate": self.incremental,
            "error": self.error,
            "indexVersion": self.index_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexMetadata":
        counts = data.get("changesApplied")
        return cls(
            status=IndexStatus(data.get("status", IndexStatus.COMPLETED.value)),
            progress=int(data.get("progress") or 0),
            total_files=int(data.get("totalFiles") or 0),
            last_updated_at=_dt_from_str(data.get("lastUpdated")),
            last_incremental_at=_dt_from_str(data.get("lastIncrementalUpdate")),
            last_change_counts=ChangeCounts(**counts) if counts else None,
            build_duration_ms=int(data.get("buildDuration") or 0),
            share_id=data.get("shareId"),
            build_id=data.get("buildId"),
            incremental=bool(data.get("incrementalUpdate", False)),
            error=data.get("error"),
            index_version=data.get("indexVersion", "1.1"),
        )


@dataclass
class ShareIndex:
    """
    The searchable snapshot of one share.

    `fingerprints` must always have exactly the paths of `entries` as keys.
    A ShareIndex is never mutated once published; updates build a new one.
    """
    share_id: int
    entries: List[IndexEntry]
    fingerprints: Dict[str, str]
    metadata: IndexMetadata

    def __len__(self) -> int:
        return len(self.entries)

    def paths(self) -> set:
        return {e.path for e in self.entries}

    def is_consistent(self) -> bool:
        return (
            len(self.fingerprints) == len(self.entries)
            and self.fingerprints.keys() == self.paths()
        )


@dataclass
class CrawlResult:
    """Fresh snapshot of a share produced by the crawler."""
    entries: List[IndexEntry]
    fingerprints: Dict[str, str]
    directories: int = 0
    skipped: int = 0
    errors: int = 0
    truncated: bool = False
    duration_seconds: float = 0.0
    failed_dirs: List[str] = field(default_factory=list)   # listing failed, contents unknown
    reused_dirs: List[str] = field(default_factory=list)   # unchanged, copied from the previous index


@dataclass
class ChangeSet:
    """Delta between a ShareIndex and a fresh crawl."""
    added: List[IndexEntry] = field(default_factory=list)
    modified: List[IndexEntry] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.modified) + len(self.deleted)

    def change_ratio(self, previous_count: int) -> float:
        return self.total_changes / max(1, previous_count)

    def counts(self) -> ChangeCounts:
        return ChangeCounts(
            added=len(self.added),
            modified=len(self.modified),
            deleted=len(self.deleted),
        )


# ---------------------------------------------------------------------------
# Results exposed by the registry
# ---------------------------------------------------------------------------

@dataclass
class SearchOptions:
    """Filters, ordering and pagination for a search."""
    extensions: List[str] = field(default_factory=list)
    kind: Optional[str] = None          # None/"all", "file", "directory"
    sort_by: str = "relevance"          # relevance, name, size, modified
    sort_order: str = "desc"
    limit: int = 100
    offset: int = 0


@dataclass
class SearchHit:
    entry: IndexEntry
    relevance: int


@dataclass
class SearchResult:
    results: List[SearchHit]
    total: int
    elapsed_ms: float
    limit: int
    offset: int
    status: IndexStatus = IndexStatus.COMPLETED

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total

    @classmethod
    def empty(cls, options: SearchOptions, status: IndexStatus) -> "SearchResult":
        return cls(
            results=[], total=0, elapsed_ms=0.0,
            limit=options.limit, offset=options.offset, status=status,
        )


@dataclass
class UpdateOutcome:
    """Result of one incremental cycle."""
    share_id: int
    kind: OutcomeKind
    reason: Optional[str] = None
    counts: ChangeCounts = field(default_factory=ChangeCounts)
    change_ratio: float = 0.0
    duration_ms: int = 0
    error: Optional[str] = None


@dataclass
class IndexChangeEvent:
    """Published to observers after an index is replaced."""
    share_id: int
    kind: str                # "incremental" or "rebuild"
    added: int
    modified: int
    deleted: int
    total_files: int


@dataclass
class IntegrityChecks:
    index_file: bool = False
    meta_file: bool = False
    hash_file: bool = False
    memory_index: bool = False
    memory_hashes: bool = False
    consistent: bool = False


@dataclass
class IntegrityReport:
    share_id: int
    checks: IntegrityChecks
    recommendation: RepairAction
    error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.recommendation is RepairAction.HEALTHY


@dataclass
class IncrementalSettings:
    enabled: bool
    check_interval: float
    full_rebuild_threshold: float


@dataclass
class IncrementalOverrides:
    """Per-share incremental settings; None falls back to the global value."""
    enabled: Optional[bool] = None
    check_interval: Optional[float] = None
    full_rebuild_threshold: Optional[float] = None


@dataclass
class IncrementalStats:
    share_id: int
    settings: IncrementalSettings
    scheduled: bool
    status: IndexStatus
    last_updated_at: Optional[datetime]
    last_incremental_at: Optional[datetime]
    last_checked_at: Optional[datetime]
    last_change_counts: Optional[ChangeCounts]
    last_outcome: Optional[UpdateOutcome]
