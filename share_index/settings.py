"""
Incremental Settings - Global defaults plus per-share overrides.

Each share may override the enabled flag, the check interval and the
full rebuild threshold. Anything not overridden falls back to the
IndexConfig value. The global `enable_incremental_update` is a master
switch: when it is off no share runs incremental cycles, whatever its
own flag says.
"""

import logging
from typing import Dict, Optional

from .config import IndexConfig
from .models import IncrementalOverrides, IncrementalSettings


logger = logging.getLogger(__name__)


def validate_incremental_settings(
    check_interval: Optional[float] = None,
    full_rebuild_threshold: Optional[float] = None,
):
    """
    Raises:
        ValueError: Non-positive interval or threshold outside [0, 1]
    """
    if check_interval is not None and check_interval <= 0:
        raise ValueError(f"check_interval must be positive, got {check_interval}")
    if full_rebuild_threshold is not None and not 0 <= full_rebuild_threshold <= 1:
        raise ValueError(
            f"full_rebuild_threshold must be between 0 and 1, got {full_rebuild_threshold}"
        )


class ShareSettings:
    """Resolves the effective incremental settings of each share."""

    def __init__(self, config: IndexConfig):
        self.config = config
        self._overrides: Dict[int, IncrementalOverrides] = {}

    def effective(self, share_id: Optional[int] = None) -> IncrementalSettings:
        """Settings in force for a share (the global ones when share_id is None)."""
        override = self._overrides.get(share_id) if share_id is not None else None
        override = override or IncrementalOverrides()

        enabled = self.config.enable_incremental_update
        if override.enabled is not None:
            enabled = enabled and override.enabled

        return IncrementalSettings(
            enabled=enabled,
            check_interval=(
                override.check_interval
                if override.check_interval is not None
                else self.config.incremental_check_interval
            ),
            full_rebuild_threshold=(
                override.full_rebuild_threshold
                if override.full_rebuild_threshold is not None
                else self.config.full_rebuild_threshold
            ),
        )

    def overrides(self, share_id: int) -> Optional[IncrementalOverrides]:
        return self._overrides.get(share_id)

    def update(
        self,
        share_id: int,
        enabled: Optional[bool] = None,
        check_interval: Optional[float] = None,
        full_rebuild_threshold: Optional[float] = None,
    ) -> IncrementalSettings:
        """Merge new overrides for a share and return its effective settings."""
        validate_incremental_settings(check_interval, full_rebuild_threshold)

        override = self._overrides.setdefault(share_id, IncrementalOverrides())
        if enabled is not None:
            override.enabled = bool(enabled)
        if check_interval is not None:
            override.check_interval = float(check_interval)
        if full_rebuild_threshold is not None:
            override.full_rebuild_threshold = float(full_rebuild_threshold)

        logger.debug(f"Incremental overrides for share {share_id}: {override}")
        return self.effective(share_id)

    def clear(self, share_id: int):
        self._overrides.pop(share_id, None)

    def retain(self, share_ids):
        """Drop the overrides of every share not in `share_ids`."""
        for share_id in [sid for sid in self._overrides if sid not in share_ids]:
            del self._overrides[share_id]
