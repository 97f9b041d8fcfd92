"""In-memory record cache with TTL expiry and LRU eviction."""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .clock import Clock
from .logging_config import get_logger
from .models import Record


logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """A cached record and when it was cached."""
    record: Record
    cached_at: datetime
    pinned: bool = False


class RecordCache:
    """LRU cache of records keyed by application key.

    Pinned entries hold values that could not be persisted locally; they
    never expire and are never evicted for the rest of the session.
    """

    def __init__(self, clock: Clock, ttl_seconds: float = 300.0, max_entries: int = 1000,
                 critical_prefixes: Iterable[str] = (), non_critical_prefixes: Iterable[str] = ()):
        """Initialize the cache.

        Args:
            clock: Time source for expiry
            ttl_seconds: Age after which an entry is stale
            max_entries: Maximum number of unpinned entries
            critical_prefixes: Key prefixes never evicted under storage pressure
            non_critical_prefixes: Key prefixes evicted first under storage pressure
        """
        self._clock = clock
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._critical_prefixes = tuple(critical_prefixes)
        self._non_critical_prefixes = tuple(non_critical_prefixes)
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def get(self, key: str, allow_stale: bool = False,
            ttl_seconds: Optional[float] = None) -> Optional[Record]:
        """Return a cached record, or None if absent or stale.

        ``ttl_seconds`` replaces the cache-wide TTL for this lookup.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.pinned and not allow_stale and self._is_stale(entry, ttl_seconds):
            return None
        self._entries.move_to_end(key)
        return entry.record

    def get_pinned(self, key: str) -> Optional[Record]:
        """Return a record only if it is pinned."""
        entry = self._entries.get(key)
        if entry is None or not entry.pinned:
            return None
        return entry.record

    def _is_stale(self, entry: CacheEntry, ttl_seconds: Optional[float] = None) -> bool:
        ttl = self._ttl if ttl_seconds is None else timedelta(seconds=ttl_seconds)
        return self._clock.now() - entry.cached_at >= ttl

    def put(self, record: Record, pinned: bool = False) -> None:
        """Cache a record, replacing any previous entry for its key."""
        self._entries[record.key] = CacheEntry(record, self._clock.now(), pinned)
        self._entries.move_to_end(record.key)
        self._enforce_limit()

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self, pattern: Optional[str] = None) -> int:
        """Remove unpinned entries, optionally only keys containing a pattern.

        Returns:
            Number of entries removed
        """
        doomed = [
            key for key, entry in self._entries.items()
            if not entry.pinned and (pattern is None or pattern in key)
        ]
        for key in doomed:
            del self._entries[key]
        logger.debug(f"Cache cleared{f' for pattern: {pattern}' if pattern else ''} ({len(doomed)} entries)")
        return len(doomed)

    def _is_critical(self, key: str) -> bool:
        return any(key.startswith(prefix) for prefix in self._critical_prefixes)

    def _is_non_critical(self, key: str) -> bool:
        return any(key.startswith(prefix) for prefix in self._non_critical_prefixes)

    def evict_non_critical(self, count: int = 1) -> List[str]:
        """Evict least recently used entries that are not critical or pinned.

        Keys matching a non-critical prefix go first.

        Returns:
            Keys that were evicted
        """
        candidates = [
            key for key, entry in self._entries.items()
            if not entry.pinned and not self._is_critical(key)
        ]
        candidates.sort(key=lambda k: 0 if self._is_non_critical(k) else 1)
        evicted = candidates[:count]
        for key in evicted:
            del self._entries[key]
        if evicted:
            logger.info(f"Evicted {len(evicted)} cache entries under storage pressure")
        return evicted

    def _enforce_limit(self) -> None:
        unpinned = [key for key, entry in self._entries.items() if not entry.pinned]
        overflow = len(unpinned) - self._max_entries
        for key in unpinned[:max(0, overflow)]:
            del self._entries[key]

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        pinned = sum(1 for entry in self._entries.values() if entry.pinned)
        return {"size": len(self._entries), "pinned": pinned}
