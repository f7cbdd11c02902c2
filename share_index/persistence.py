"""
Persistence - Atomic on-disk storage of share indexes.

Each share is stored as three JSON artifacts in the index directory:

    share_<id>.json         entries
    share_<id>_meta.json    metadata
    share_<id>_hashes.json  path -> fingerprint map

A save writes all three to uniquely named temp files, reads them back,
and only then moves them over the previous artifacts with os.replace.
All three carry the same build id, so a save interrupted between renames
is detected on load instead of serving entries and fingerprints from
different builds.
"""

import asyncio
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import IndexConfig
from .errors import PersistenceError
from .hasher import fingerprint_map
from .models import IndexEntry, IndexMetadata, IndexStatus, ShareIndex, utcnow


logger = logging.getLogger(__name__)

_ENTRIES_FILE = re.compile(r"^share_(\d+)\.json$")
_USE_CONFIG = object()


def new_build_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ArtifactReport:
    """What is on disk for one share, without interpreting it."""
    entries_exists: bool = False
    entries_readable: bool = False
    entry_count: int = 0
    entries_build_id: Optional[str] = None
    meta_exists: bool = False
    meta_readable: bool = False
    metadata: Optional[IndexMetadata] = None
    hashes_exists: bool = False
    hashes_readable: bool = False
    hash_count: int = 0
    hashes_build_id: Optional[str] = None
    hash_keys_match: bool = False

    @property
    def entries_valid(self) -> bool:
        """Entries readable and written by the same save as the metadata."""
        return (
            self.entries_readable
            and self.meta_readable
            and self.metadata is not None
            and self.entries_build_id == self.metadata.build_id
            and self.entry_count == self.metadata.total_files
        )

    @property
    def hashes_valid(self) -> bool:
        return (
            self.hashes_readable
            and self.metadata is not None
            and self.hashes_build_id == self.metadata.build_id
            and self.hash_keys_match
        )


class PersistenceManager:
    """
    Reads and writes share index artifacts.

    All public methods are coroutines; file I/O runs in the default
    executor so a large index never blocks the event loop.
    """

    def __init__(self, config: IndexConfig | None = None):
        self.config = config or IndexConfig()

    # --- Paths ---

    @property
    def index_dir(self) -> Path:
        return self.config.index_dir

    def entries_path(self, share_id: int) -> Path:
        return self.index_dir / f"share_{share_id}.json"

    def meta_path(self, share_id: int) -> Path:
        return self.index_dir / f"share_{share_id}_meta.json"

    def hashes_path(self, share_id: int) -> Path:
        return self.index_dir / f"share_{share_id}_hashes.json"

    def artifact_paths(self, share_id: int) -> List[Path]:
        return [
            self.entries_path(share_id),
            self.hashes_path(share_id),
            self.meta_path(share_id),
        ]

    async def _run(self, func, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func, *args)

    # --- Public API ---

    async def ensure_dir(self):
        if self.config.enable_persistence:
            await self._run(self._ensure_dir_sync)

    async def save(
        self,
        share_id: int,
        entries: List[IndexEntry],
        metadata: IndexMetadata,
        fingerprints: Dict[str, str],
    ) -> IndexMetadata:
        """
        Atomically persist a share index.

        Returns:
            The metadata as written (share id and a fresh build id set)

        Raises:
            PersistenceError: Nothing was replaced; previous artifacts intact
        """
        metadata = metadata.copy(share_id=share_id, build_id=new_build_id())
        if not self.config.enable_persistence:
            return metadata

        await self._run(self._save_sync, share_id, entries, metadata, fingerprints)
        return metadata

    async def load(self, share_id: int, max_age: Any = _USE_CONFIG) -> Optional[ShareIndex]:
        """
        Load a share index from disk.

        Args:
            share_id: Share to load
            max_age: Reject artifacts older than this many seconds
                     (default: config.max_disk_age, None: no age limit)

        Returns:
            ShareIndex, or None when missing, inconsistent or too old
        """
        if not self.config.enable_persistence:
            return None
        if max_age is _USE_CONFIG:
            max_age = self.config.max_disk_age
        return await self._run(self._load_sync, share_id, max_age)

    async def delete(self, share_id: int):
        """Remove all artifacts (and stray temp files) of a share."""
        if not self.config.enable_persistence:
            return
        await self._run(self._delete_sync, share_id)

    async def inspect(self, share_id: int) -> ArtifactReport:
        """Report presence and readability of each artifact."""
        if not self.config.enable_persistence:
            return ArtifactReport()
        return await self._run(self._inspect_sync, share_id)

    async def stored_share_ids(self) -> List[int]:
        """Share ids that have an entries artifact on disk."""
        if not self.config.enable_persistence:
            return []
        return await self._run(self._stored_share_ids_sync)

    # --- Sync implementations (executor) ---

    def _ensure_dir_sync(self):
        if not self.index_dir.exists():
            self.index_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created index directory: {self.index_dir}")

    def _save_sync(
        self,
        share_id: int,
        entries: List[IndexEntry],
        metadata: IndexMetadata,
        fingerprints: Dict[str, str],
    ):
        paths = {e.path for e in entries}
        if len(paths) != len(entries) or fingerprints.keys() != paths:
            raise PersistenceError(
                f"Refusing to persist share {share_id}: fingerprints do not match entries"
            )

        build_id = metadata.build_id
        artifacts = [
            (self.entries_path(share_id), {
                "shareId": share_id,
                "buildId": build_id,
                "entries": [e.to_dict() for e in entries],
            }),
            (self.hashes_path(share_id), {
                "shareId": share_id,
                "buildId": build_id,
                "fingerprints": fingerprints,
            }),
            (self.meta_path(share_id), metadata.to_dict()),
        ]

        token = uuid.uuid4().hex
        temp_files: List[Path] = []

        try:
            self._ensure_dir_sync()

            for target, payload in artifacts:
                temp = target.with_name(f"{target.name}.tmp.{token}")
                temp_files.append(temp)
                self._write_json(temp, payload)

            self._verify_temp_files(temp_files, len(entries), build_id)

            # Metadata goes last: it is the marker the other two are checked against
            for (target, _), temp in zip(artifacts, temp_files):
                os.replace(temp, target)

        except Exception as e:
            logger.error(f"Failed to persist index for share {share_id}: {e}")
            for temp in temp_files:
                try:
                    temp.unlink(missing_ok=True)
                except OSError as cleanup_error:
                    logger.debug(f"Could not remove temp file {temp}: {cleanup_error}")
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Failed to persist index for share {share_id}: {e}") from e

        logger.info(
            f"Persisted index for share {share_id}: {len(entries)} entries "
            f"(build {build_id[:8]})"
        )

    def _write_json(self, path: Path, payload: Dict[str, Any]):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, separators=(",", ":"))
            f.flush()
            os.fsync(f.fileno())

    def _verify_temp_files(self, temp_files: List[Path], entry_count: int, build_id: str):
        """Read every temp artifact back before anything is replaced."""
        entries_tmp, hashes_tmp, meta_tmp = temp_files

        with open(entries_tmp, encoding="utf-8") as f:
            entries_doc = json.load(f)
        with open(hashes_tmp, encoding="utf-8") as f:
            hashes_doc = json.load(f)
        with open(meta_tmp, encoding="utf-8") as f:
            meta_doc = json.load(f)

        if len(entries_doc["entries"]) != entry_count:
            raise PersistenceError(f"Verification failed for {entries_tmp.name}")
        if len(hashes_doc["fingerprints"]) != entry_count:
            raise PersistenceError(f"Verification failed for {hashes_tmp.name}")
        if {entries_doc["buildId"], hashes_doc["buildId"], meta_doc["buildId"]} != {build_id}:
            raise PersistenceError("Verification failed: build ids differ")

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        """Parse an artifact; None when missing or unreadable."""
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable index artifact {path.name}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _load_sync(self, share_id: int, max_age: Optional[float]) -> Optional[ShareIndex]:
        meta_doc = self._read_json(self.meta_path(share_id))
        entries_doc = self._read_json(self.entries_path(share_id))
        if meta_doc is None or entries_doc is None:
            logger.debug(f"No usable index on disk for share {share_id}")
            return None

        try:
            metadata = IndexMetadata.from_dict(meta_doc)
            entries = [IndexEntry.from_dict(d) for d in entries_doc["entries"]]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed index artifacts for share {share_id}: {e}")
            return None

        if entries_doc.get("buildId") != metadata.build_id or len(entries) != metadata.total_files:
            logger.warning(
                f"Index artifacts for share {share_id} come from different saves, "
                f"ignoring them"
            )
            return None

        if max_age is not None:
            if metadata.last_updated_at is None:
                return None
            age = (utcnow() - metadata.last_updated_at).total_seconds()
            if age > max_age:
                logger.info(
                    f"Index on disk for share {share_id} is {age / 60:.0f} min old, "
                    f"will rebuild"
                )
                return None

        paths = {e.path for e in entries}
        fingerprints = None
        hashes_doc = self._read_json(self.hashes_path(share_id))
        if hashes_doc is not None and hashes_doc.get("buildId") == metadata.build_id:
            stored = hashes_doc.get("fingerprints")
            if isinstance(stored, dict) and stored.keys() == paths:
                fingerprints = stored

        if fingerprints is None:
            logger.info(f"Reconstructing fingerprints for share {share_id} from entries")
            fingerprints = fingerprint_map(entries)

        metadata = metadata.copy(status=IndexStatus.COMPLETED, share_id=share_id)
        logger.info(f"Loaded index for share {share_id}: {len(entries)} entries")

        return ShareIndex(
            share_id=share_id,
            entries=entries,
            fingerprints=fingerprints,
            metadata=metadata,
        )

    def _delete_sync(self, share_id: int):
        for path in self.artifact_paths(share_id):
            path.unlink(missing_ok=True)
            if self.index_dir.exists():
                for stray in self.index_dir.glob(f"{path.name}.tmp.*"):
                    stray.unlink(missing_ok=True)
        logger.info(f"Deleted index artifacts for share {share_id}")

    def _inspect_sync(self, share_id: int) -> ArtifactReport:
        report = ArtifactReport()

        entries_path = self.entries_path(share_id)
        report.entries_exists = entries_path.exists()
        entries_doc = self._read_json(entries_path)
        entry_paths = set()
        if entries_doc is not None and isinstance(entries_doc.get("entries"), list):
            report.entries_readable = True
            report.entry_count = len(entries_doc["entries"])
            report.entries_build_id = entries_doc.get("buildId")
            entry_paths = {d.get("path") for d in entries_doc["entries"] if isinstance(d, dict)}

        meta_path = self.meta_path(share_id)
        report.meta_exists = meta_path.exists()
        meta_doc = self._read_json(meta_path)
        if meta_doc is not None:
            try:
                report.metadata = IndexMetadata.from_dict(meta_doc)
                report.meta_readable = True
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Malformed metadata for share {share_id}: {e}")

        hashes_path = self.hashes_path(share_id)
        report.hashes_exists = hashes_path.exists()
        hashes_doc = self._read_json(hashes_path)
        if hashes_doc is not None and isinstance(hashes_doc.get("fingerprints"), dict):
            report.hashes_readable = True
            report.hash_count = len(hashes_doc["fingerprints"])
            report.hashes_build_id = hashes_doc.get("buildId")
            report.hash_keys_match = (
                report.entries_readable and hashes_doc["fingerprints"].keys() == entry_paths
            )

        return report

    def _stored_share_ids_sync(self) -> List[int]:
        if not self.index_dir.exists():
            return []
        ids = []
        for path in self.index_dir.iterdir():
            match = _ENTRIES_FILE.match(path.name)
            if match:
                ids.append(int(match.group(1)))
        return sorted(ids)
