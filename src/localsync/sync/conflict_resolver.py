"""Last-write-wins conflict resolution between local records and remote documents."""

from typing import Any, Optional

from .logging_config import get_logger
from .models import Record


logger = get_logger(__name__)


class Resolution:
    """Outcomes of resolving a fetched remote value against local state."""
    KEEP_LOCAL = "keep_local"
    ACCEPT_REMOTE = "accept_remote"
    UNCHANGED = "unchanged"


class LastWriteWinsResolver:
    """Resolves remote refreshes with a last-write-wins policy.

    Remote documents carry no timestamps of their own, so the newest
    write is decided from local knowledge: a local operation that is
    still queued, or a local write newer than the start of the refresh,
    is later than anything the remote store can hold. Otherwise the
    remote value is the latest committed state.
    """

    def resolve(self, local: Optional[Record], remote_value: Any, has_pending_operation: bool,
                local_version_at_fetch: Optional[int]) -> str:
        """Decide which value wins for a key.

        Args:
            local: Current local record, if any
            remote_value: Value read from the remote store
            has_pending_operation: Whether a queued local operation exists for the key
            local_version_at_fetch: Local version observed when the remote read started

        Returns:
            One of the Resolution constants
        """
        if has_pending_operation:
            return Resolution.KEEP_LOCAL

        current_version = local.version if local is not None else None
        if current_version != local_version_at_fetch:
            key = local.key if local is not None else "?"
            logger.debug(f"Local write to {key} during refresh, keeping local value")
            return Resolution.KEEP_LOCAL

        if local is not None and local.value == remote_value:
            return Resolution.UNCHANGED

        return Resolution.ACCEPT_REMOTE
