"""
Error Handling - Centralized error policies and custom exceptions.

Per-item failures during a crawl (unreadable entries, vanished
directories) are recovered locally according to ERROR_POLICIES. Build and
update failures are reported through index metadata; only contract
violations raise out of the registry.
"""

import logging
from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()           # Skip this item, continue processing
    ABORT = auto()          # Stop the current build or cycle


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{path}: {error}"


class ShareIndexError(Exception):
    """Base exception for indexing engine errors."""
    pass


class InvalidShareIdError(ShareIndexError, ValueError):
    """Share id is not a non-negative integer."""
    def __init__(self, share_id: object):
        self.share_id = share_id
        super().__init__(f"Invalid share id: {share_id!r}")


class ShareNotFoundError(ShareIndexError):
    """Share is not configured."""
    def __init__(self, share_id: int):
        self.share_id = share_id
        super().__init__(f"Share {share_id} does not exist")


class ShareDisabledError(ShareIndexError):
    """Share exists but is disabled."""
    def __init__(self, share_id: int):
        self.share_id = share_id
        super().__init__(f"Share {share_id} is disabled")


class ShareConfigError(ShareIndexError):
    """Share descriptor cannot be used (unknown type, missing connection info)."""
    pass


class CrawlError(ShareIndexError):
    """Crawl could not start (share root unreadable)."""
    pass


class PersistenceError(ShareIndexError):
    """Index artifacts could not be written or verified."""
    pass


class IncrementalUpdateDisabledError(ShareIndexError):
    """Manual incremental trigger while incremental updates are off."""
    pass


class InvalidSearchOptionsError(ShareIndexError, ValueError):
    """Search options outside the supported values."""
    pass


# Error type to policy mapping (first isinstance match wins)
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    ShareConfigError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Share misconfigured while listing {path}: {error}"
    ),
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {path}"
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Entry vanished during crawl: {path}"
    ),
    NotADirectoryError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Expected directory, got file: {path}"
    ),
    TimeoutError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Listing timed out: {path}"
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="I/O error listing {path} - {error}"
    ),
}


def handle_error(
    error: Exception,
    path: Optional[str] = None,
    context: str = ""
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        path: Share-relative path being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take
    """
    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = p
            break

    # Default policy for unknown errors
    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.SKIP,
            log_level=logging.ERROR,
            message_template="Unexpected error: {path} - {error}"
        )

    path_str = path if path else "<unknown>"
    message = policy.message_template.format(path=path_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action
