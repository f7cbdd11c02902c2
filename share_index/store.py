"""
Index Store - Live share indexes and their per-share coordination state.

Readers only ever see a complete ShareIndex: publishing replaces the
reference in one assignment, after the new index has been persisted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .models import IndexMetadata, ShareIndex, UpdateOutcome


logger = logging.getLogger(__name__)


@dataclass
class ShareState:
    """
    Everything the engine tracks for one share.

    `index` is the last good snapshot (servable even while a build runs);
    `metadata` is the current status shown to callers. `generation` is
    bumped by every rebuild so an in-flight incremental cycle can tell it
    has been superseded.
    """
    share_id: int
    index: Optional[ShareIndex] = None
    metadata: IndexMetadata = field(default_factory=IndexMetadata)
    generation: int = 0
    last_checked_at: Optional[datetime] = None
    last_full_scan_at: Optional[datetime] = None
    last_outcome: Optional[UpdateOutcome] = None
    build_task: Optional[asyncio.Task] = None
    cycle_task: Optional[asyncio.Task] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def building(self) -> bool:
        return self.build_task is not None and not self.build_task.done()

    @property
    def cycle_running(self) -> bool:
        return self.cycle_task is not None and not self.cycle_task.done()


class IndexStore:
    """In-memory map of share id to ShareState."""

    def __init__(self):
        self._states: Dict[int, ShareState] = {}

    def __contains__(self, share_id: int) -> bool:
        return share_id in self._states

    def state(self, share_id: int) -> ShareState:
        """Get the state for a share, creating an empty one."""
        state = self._states.get(share_id)
        if state is None:
            state = ShareState(share_id=share_id)
            state.metadata.share_id = share_id
            self._states[share_id] = state
        return state

    def get(self, share_id: int) -> Optional[ShareState]:
        return self._states.get(share_id)

    def index(self, share_id: int) -> Optional[ShareIndex]:
        state = self._states.get(share_id)
        return state.index if state else None

    def publish(self, share_id: int, index: ShareIndex):
        """Make `index` the live snapshot of a share."""
        state = self.state(share_id)
        state.index = index
        state.metadata = index.metadata
        logger.debug(f"Published index for share {share_id}: {len(index)} entries")

    def discard(self, share_id: int):
        """Drop the live snapshot but keep coordination state."""
        state = self._states.get(share_id)
        if state is not None:
            state.index = None
            state.metadata = IndexMetadata(share_id=share_id)
            state.last_checked_at = None
            state.last_full_scan_at = None

    def remove(self, share_id: int) -> Optional[ShareState]:
        return self._states.pop(share_id, None)

    def share_ids(self) -> List[int]:
        return list(self._states)

    def indexed_share_ids(self) -> List[int]:
        return [sid for sid, state in self._states.items() if state.index is not None]

    def clear(self):
        self._states.clear()
