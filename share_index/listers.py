"""
Listers - Directory listing adapters and share lookup.

The crawler never touches a backing store directly: it asks a
DirectoryLister for the children of one share-relative directory at a
time. Listing calls block, so both implementations run in a thread pool.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from .config import IndexConfig
from .errors import ShareConfigError, handle_error
from .models import EntryKind, ListedEntry, ShareDescriptor, ShareType


logger = logging.getLogger(__name__)


class DirectoryLister(ABC):
    """
    Lists the direct children of a directory inside a share.

    `relative_path` is share-relative and forward-slash separated, "/" for
    the share root. Failures raise and are handled per call by the crawler.
    """

    # Upper bound on concurrent list() calls for one crawl (None: crawler default)
    max_concurrency: Optional[int] = None

    @abstractmethod
    async def list(self, share: ShareDescriptor, relative_path: str) -> List[ListedEntry]:
        ...


class LocalDirectoryLister(DirectoryLister):
    """Lists directories on the local filesystem with os.scandir."""

    async def list(self, share: ShareDescriptor, relative_path: str) -> List[ListedEntry]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, self._list_sync, Path(share.root), relative_path
        )

    def _list_sync(self, root: Path, relative_path: str) -> List[ListedEntry]:
        directory = root.joinpath(*[p for p in relative_path.split("/") if p])
        entries: List[ListedEntry] = []

        with os.scandir(directory) as it:
            for entry in it:
                try:
                    stat = entry.stat(follow_symlinks=False)
                    is_dir = entry.is_dir(follow_symlinks=False)
                except OSError as e:
                    handle_error(e, f"{relative_path.rstrip('/')}/{entry.name}", "stat")
                    continue

                entries.append(ListedEntry(
                    name=entry.name,
                    kind=EntryKind.DIRECTORY if is_dir else EntryKind.FILE,
                    size=0 if is_dir else stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    extra={"inode": stat.st_ino},
                ))

        return entries


class SmbDirectoryLister(DirectoryLister):
    """
    Lists directories of an SMB export through smbclient (smbprotocol).

    SMB servers throttle parallel requests from one client, so a crawl over
    this lister runs at most `config.smb_concurrency` listings at once.
    """

    def __init__(self, config: IndexConfig | None = None):
        self.config = config or IndexConfig()
        self.max_concurrency = self.config.smb_concurrency

    async def list(self, share: ShareDescriptor, relative_path: str) -> List[ListedEntry]:
        if share.smb is None:
            raise ShareConfigError(f"Share {share.id} has no SMB connection info")

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._list_sync, share, relative_path)

    def _list_sync(self, share: ShareDescriptor, relative_path: str) -> List[ListedEntry]:
        try:
            import smbclient
        except ImportError:
            logger.error("smbprotocol not installed. Run: pip install smbprotocol")
            raise

        conn = share.smb
        username = conn.username
        if username and conn.domain and "\\" not in username:
            username = f"{conn.domain}\\{username}"

        unc = conn.unc_path(share.root, relative_path)
        entries: List[ListedEntry] = []

        for entry in smbclient.scandir(
            unc, username=username, password=conn.password, port=conn.port
        ):
            if entry.name in {".", ".."}:
                continue
            try:
                stat = entry.stat()
                is_dir = entry.is_dir()
            except OSError as e:
                handle_error(e, f"{relative_path.rstrip('/')}/{entry.name}", "smb_stat")
                continue

            entries.append(ListedEntry(
                name=entry.name,
                kind=EntryKind.DIRECTORY if is_dir else EntryKind.FILE,
                size=0 if is_dir else stat.st_size,
                modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            ))

        return entries


ListerFactory = Callable[[ShareDescriptor], DirectoryLister]


def default_lister_factory(config: IndexConfig | None = None) -> ListerFactory:
    """
    Create the factory resolving a share to its lister.

    Listers are stateless, so one instance per share type is shared.
    """
    local = LocalDirectoryLister()
    smb = SmbDirectoryLister(config)

    def lister_for(share: ShareDescriptor) -> DirectoryLister:
        if share.type is ShareType.LOCAL:
            return local
        if share.type is ShareType.SMB:
            return smb
        raise ShareConfigError(f"Unsupported share type for share {share.id}: {share.type}")

    return lister_for


class ShareRegistry(Protocol):
    """Read access to configured shares."""

    def get(self, share_id: int) -> Optional[ShareDescriptor]:
        ...

    def all(self) -> List[ShareDescriptor]:
        ...


class StaticShareRegistry:
    """In-memory ShareRegistry, for embedding and tests."""

    def __init__(self, shares: Iterable[ShareDescriptor] = ()):
        self._shares: Dict[int, ShareDescriptor] = {s.id: s for s in shares}

    def get(self, share_id: int) -> Optional[ShareDescriptor]:
        return self._shares.get(share_id)

    def all(self) -> List[ShareDescriptor]:
        return list(self._shares.values())

    def add(self, share: ShareDescriptor) -> None:
        self._shares[share.id] = share

    def remove(self, share_id: int) -> None:
        self._shares.pop(share_id, None)
