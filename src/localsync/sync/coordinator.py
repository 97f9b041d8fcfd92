"""Synchronization coordinator for the cache, local store and remote store."""

import asyncio
import copy
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from ..events.broker import SyncEventBroker
from ..storage import iter_prefixed
from .cache import RecordCache
from .clock import Clock
from .config import EngineConfig
from .conflict_resolver import LastWriteWinsResolver, Resolution
from .exceptions import NetworkError, RemotePermissionError, SerializationError, StorageQuotaError
from .interfaces import KeyValueStore, LegacyStorageReader, RemoteDocumentClient
from .logging_config import get_logger, log_sync_event
from .migration import FlatKeyLegacyReader, LegacyMigrator, MigrationReport
from .models import (
    EventType, FlushResult, NOT_FOUND, OperationType, QueuedOperation, Record, RecordOrigin,
    RECORD_PREFIX, SyncEvent, SyncState, SyncStatus, INTERNAL_PREFIX,
    record_storage_key, version_storage_key
)
from .operation_queue import OfflineOperationQueue
from .remote import call_with_timeout


logger = get_logger(__name__)

HEALTH_CHECK_KEY = f"{INTERNAL_PREFIX}health_check"


class SyncCoordinator:
    """Owns the read, write and migration policy of the engine.

    Reads go cache, local store, then remote. Writes update the cache,
    persist locally before returning, and reach the remote store in the
    background, falling back to the offline queue.
    """

    def __init__(self,
                 config: EngineConfig,
                 store: KeyValueStore,
                 broker: SyncEventBroker,
                 state: SyncState,
                 clock: Clock,
                 remote: Optional[RemoteDocumentClient] = None,
                 legacy_reader: Optional[LegacyStorageReader] = None,
                 resolver: Optional[LastWriteWinsResolver] = None):
        """Initialize the coordinator.

        Args:
            config: Engine configuration
            store: Durable local store
            broker: Event broker for sync status events
            state: Shared sync state
            clock: Time source
            remote: Remote document client; ignored when remote is disabled
            legacy_reader: Source for migrating pre-engine data
            resolver: Conflict policy for background refreshes
        """
        self._config = config
        self._store = store
        self._broker = broker
        self._state = state
        self._clock = clock
        self._remote = remote if config.enable_remote else None
        self._legacy_reader = legacy_reader or FlatKeyLegacyReader(store)
        self._resolver = resolver or LastWriteWinsResolver()

        self._cache = RecordCache(
            clock,
            ttl_seconds=config.cache_ttl_seconds,
            max_entries=config.cache_max_entries,
            critical_prefixes=config.critical_prefixes,
            non_critical_prefixes=config.non_critical_prefixes,
        )

        self._queue: Optional[OfflineOperationQueue] = None
        if self._remote is not None and config.enable_offline_queue:
            self._queue = OfflineOperationQueue(
                store, self._send_operation, broker, state, clock, self.is_online,
                base_delay_seconds=config.retry_base_delay_seconds,
                max_delay_seconds=config.retry_max_delay_seconds,
            )

        self._versions: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._key_tails: Dict[str, asyncio.Task] = {}
        self._refreshing: Dict[str, asyncio.Task] = {}
        self._metrics = {
            "cache_hits": 0,
            "cache_misses": 0,
            "local_reads": 0,
            "local_writes": 0,
            "remote_reads": 0,
            "remote_operations": 0,
            "remote_failures": 0,
            "quota_errors": 0,
        }

    # Lifecycle

    @property
    def queue(self) -> Optional[OfflineOperationQueue]:
        return self._queue

    @property
    def cache(self) -> RecordCache:
        return self._cache

    @property
    def remote_enabled(self) -> bool:
        return self._remote is not None

    def is_online(self) -> bool:
        return self._state.online

    def start(self) -> None:
        """Load the persisted queue and start its scheduler."""
        if self._queue is not None:
            self._queue.load()
            self._queue.start_scheduler()

    async def close(self) -> None:
        """Wait for background work and stop the scheduler."""
        await self.wait_idle()
        if self._queue is not None:
            await self._queue.stop_scheduler()

    async def wait_idle(self) -> None:
        """Wait until background pushes and refreshes have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Validation

    @staticmethod
    def validate_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise ValueError(f"Key must be a non-empty string, got {key!r}")

    @staticmethod
    def normalize_value(key: str, value: Any) -> Any:
        """Return a private copy of a value after checking it round-trips through JSON.

        Raises:
            SerializationError: If the value cannot be stored faithfully
        """
        try:
            text = json.dumps(value, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(key, str(e))
        decoded = json.loads(text)
        if decoded != value:
            raise SerializationError(key, "value changes when round-tripped through JSON")
        return decoded

    # Local persistence

    def _load_record(self, key: str) -> Optional[Record]:
        raw = self._store.get(record_storage_key(key))
        if raw is None:
            return None
        try:
            return Record.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Stored record for {key} is unreadable: {e}")
            return None

    def _next_version(self, key: str) -> int:
        current = self._versions.get(key)
        if current is None:
            raw = self._store.get(version_storage_key(key))
            current = int(raw) if raw else 0
            existing = self._load_record(key)
            if existing is not None:
                current = max(current, existing.version)
        version = current + 1
        self._versions[key] = version
        try:
            self._store.set(version_storage_key(key), str(version))
        except StorageQuotaError as e:
            logger.warning(f"Version counter for {key} kept in memory only: {e}")
        return version

    def _persist_record(self, record: Record) -> bool:
        storage_key = record_storage_key(record.key)
        payload = record.model_dump_json()
        try:
            self._store.set(storage_key, payload)
            self._metrics["local_writes"] += 1
            return True
        except StorageQuotaError as e:
            self._metrics["quota_errors"] += 1
            return self._recover_from_quota(record.key, storage_key, payload, e)

    def _recover_from_quota(self, key: str, storage_key: str, payload: str,
                            error: StorageQuotaError) -> bool:
        """Free space and retry a failed local write once."""
        evicted = self._cache.evict_non_critical(max(1, len(self._cache) // 4))
        removed = self._evict_local_non_critical(exclude=key)

        try:
            self._store.set(storage_key, payload)
            recovered = True
            logger.warning(f"Storage quota exceeded writing {key}; recovered after evicting "
                           f"{len(evicted)} cached and {len(removed)} stored entries")
        except StorageQuotaError as retry_error:
            recovered = False
            log_sync_event(
                logger, "storage_warning", key,
                f"Storage quota exceeded writing {key}; value kept in memory for this session: {retry_error}",
                level=logging.WARNING
            )

        self._broker.publish(SyncEvent(
            EventType.STORAGE_WARNING, key, self._clock.now(), reason="quota_exceeded",
            details={**error.details, "recovered": recovered,
                     "evicted_cache_entries": evicted, "removed_local_entries": removed}
        ))
        return recovered

    def _evict_local_non_critical(self, exclude: str) -> List[str]:
        """Remove the oldest half of locally stored non-critical records."""
        prefixes = self._config.non_critical_prefixes
        if not prefixes:
            return []
        critical = self._config.critical_prefixes

        candidates: List[Tuple[datetime, str]] = []
        for storage_key in iter_prefixed(self._store, RECORD_PREFIX):
            key = storage_key[len(RECORD_PREFIX):]
            if key == exclude or not key.startswith(prefixes) or key.startswith(critical):
                continue
            record = self._load_record(key)
            if record is not None:
                candidates.append((record.updated_at, key))

        candidates.sort()
        doomed = [key for _, key in candidates[:max(1, len(candidates) // 2)]] if candidates else []
        for key in doomed:
            self._store.remove(record_storage_key(key))
            self._cache.invalidate(key)
        return doomed

    def _cache_record(self, record: Record, persisted: bool) -> None:
        if not persisted:
            self._cache.put(record, pinned=True)
        elif self._config.enable_caching:
            self._cache.put(record)
        else:
            self._cache.invalidate(record.key)

    # Read path

    async def read(self, key: str, bypass_cache: bool = False,
                   ttl_seconds: Optional[float] = None) -> Any:
        """Read a value, returning None for keys that exist nowhere.

        Never raises for remote or storage failures.

        Args:
            key: Application key
            bypass_cache: Skip cached entries and read the local store
            ttl_seconds: Maximum age of a cached entry for this read
        """
        self.validate_key(key)

        if bypass_cache or not self._config.enable_caching:
            cached = self._cache.get_pinned(key)
        else:
            cached = self._cache.get(key, ttl_seconds=ttl_seconds)
        if cached is not None:
            self._metrics["cache_hits"] += 1
            return copy.deepcopy(cached.value)
        self._metrics["cache_misses"] += 1

        record = self._load_record(key)
        self._metrics["local_reads"] += 1
        if record is not None:
            if self._config.enable_caching:
                self._cache.put(record)
            self._schedule_refresh(key, record.version)
            return copy.deepcopy(record.value)

        if not self._remote_readable(key):
            return None

        self._metrics["remote_reads"] += 1
        try:
            value = await call_with_timeout(
                self._remote.read(key), self._config.remote_timeout_seconds, "read", key
            )
        except (NetworkError, RemotePermissionError) as e:
            self._metrics["remote_failures"] += 1
            logger.info(f"Remote read failed for {key}, returning local state: {e}")
            return None
        except Exception as e:
            self._metrics["remote_failures"] += 1
            logger.error(f"Unexpected error reading {key} from remote: {e}", exc_info=True)
            return None

        if value is NOT_FOUND:
            return None

        # A local write may have landed while the remote read was in flight
        local = self._load_record(key)
        if local is not None or self._has_local_activity(key) or self._has_local_history(key):
            return copy.deepcopy(local.value) if local is not None else None

        try:
            value = self.normalize_value(key, value)
        except SerializationError as e:
            logger.error(f"Remote value for {key} is not storable: {e}")
            return None

        record = self._write_through(key, value)
        return copy.deepcopy(record.value)

    def _remote_readable(self, key: str) -> bool:
        if self._remote is None or not self.is_online():
            return False
        # Local operations on the key have not reached the remote yet, or a
        # local removal must not be undone by a stale remote copy
        return not self._has_local_activity(key) and not self._has_local_history(key)

    def _has_local_activity(self, key: str) -> bool:
        if key in self._key_tails:
            return True
        return self._queue is not None and self._queue.has_pending(key)

    def _has_local_history(self, key: str) -> bool:
        if key in self._versions:
            return True
        return self._store.get(version_storage_key(key)) is not None

    def _write_through(self, key: str, value: Any) -> Record:
        record = Record(key=key, value=value, version=self._next_version(key),
                        updated_at=self._clock.now(), origin=RecordOrigin.REMOTE)
        persisted = self._persist_record(record)
        self._cache_record(record, persisted)
        return record

    def _schedule_refresh(self, key: str, version: int) -> None:
        if self._remote is None or not self.is_online() or key in self._refreshing:
            return
        task = self._track(asyncio.create_task(self._refresh(key, version)))
        self._refreshing[key] = task
        task.add_done_callback(lambda t, k=key: self._refreshing.pop(k, None))

    async def _refresh(self, key: str, version_at_fetch: int) -> None:
        """Refresh a locally known key from the remote store in the background."""
        self._metrics["remote_reads"] += 1
        try:
            value = await call_with_timeout(
                self._remote.read(key), self._config.remote_timeout_seconds, "read", key
            )
        except Exception as e:
            self._metrics["remote_failures"] += 1
            logger.debug(f"Background refresh of {key} failed: {e}")
            return

        if value is NOT_FOUND:
            return

        local = self._load_record(key)
        resolution = self._resolver.resolve(
            local, value, self._has_local_activity(key), version_at_fetch
        )
        if resolution != Resolution.ACCEPT_REMOTE:
            return

        try:
            value = self.normalize_value(key, value)
        except SerializationError as e:
            logger.error(f"Remote value for {key} is not storable: {e}")
            return
        self._write_through(key, value)
        log_sync_event(logger, "remote_refresh", key, f"Refreshed {key} from remote",
                       level=logging.DEBUG)

    # Write path

    async def write(self, key: str, value: Any) -> Record:
        """Write a value locally and schedule it for the remote store.

        Raises:
            ValueError: If the key is invalid
            SerializationError: If the value does not round-trip through JSON
        """
        self.validate_key(key)
        value = self.normalize_value(key, value)
        return self._write_local(key, value, schedule_remote=True)

    def _write_local(self, key: str, value: Any, schedule_remote: bool) -> Record:
        record = Record(key=key, value=value, version=self._next_version(key),
                        updated_at=self._clock.now(), origin=RecordOrigin.LOCAL)
        persisted = self._persist_record(record)
        self._cache_record(record, persisted)

        if schedule_remote:
            self._schedule_push(OperationType.SET, key, value)
        return record

    async def remove(self, key: str) -> None:
        """Remove a value locally and schedule the remote delete."""
        self.validate_key(key)
        self._next_version(key)
        self._cache.invalidate(key)
        self._store.remove(record_storage_key(key))
        self._schedule_push(OperationType.REMOVE, key, None)

    def _schedule_push(self, op_type: OperationType, key: str, value: Any) -> None:
        if self._remote is None:
            return

        previous = self._key_tails.get(key)
        if previous is None and (not self.is_online() or
                                 (self._queue is not None and self._queue.has_pending(key))):
            reason = "offline" if not self.is_online() else "earlier operation queued"
            self._defer(op_type, key, value, reason)
            return

        task = self._track(asyncio.create_task(self._push(op_type, key, value, previous)))
        self._key_tails[key] = task

        def release(done: asyncio.Task, k: str = key) -> None:
            if self._key_tails.get(k) is done:
                del self._key_tails[k]

        task.add_done_callback(release)

    async def _push(self, op_type: OperationType, key: str, value: Any,
                    previous: Optional[asyncio.Task]) -> None:
        # Same-key pushes leave in submission order
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)

        if not self.is_online() or (self._queue is not None and self._queue.has_pending(key)):
            self._defer(op_type, key, value, "offline" if not self.is_online() else "earlier operation queued")
            return

        op = QueuedOperation(op_type=op_type, key=key, value=value, enqueued_at=self._clock.now())
        try:
            await self._send_operation(op)
        except RemotePermissionError as e:
            self._metrics["remote_failures"] += 1
            log_sync_event(logger, "sync_failure", key,
                           f"Remote {op_type.value} rejected for {key}: {e}",
                           level=logging.WARNING, operation_id=op.id)
            self._broker.publish(SyncEvent(
                EventType.SYNC_FAILURE, key, self._clock.now(),
                reason=e.error_code, details=e.details
            ))
        except Exception as e:
            self._metrics["remote_failures"] += 1
            if not isinstance(e, NetworkError):
                logger.error(f"Unexpected error during remote {op_type.value} for {key}: {e}",
                             exc_info=True)
            self._defer(op_type, key, value, str(e), failed=True)
        else:
            committed_at = self._clock.now()
            self._state.last_successful_sync = committed_at
            log_sync_event(logger, "sync_committed", key,
                           f"Remote {op_type.value} committed for {key}",
                           level=logging.DEBUG, operation_id=op.id)
            self._broker.publish(SyncEvent(EventType.SYNC_COMMITTED, key, committed_at))

    def _defer(self, op_type: OperationType, key: str, value: Any, reason: str,
               failed: bool = False) -> None:
        """Queue an operation for later, or report it lost when queueing is disabled."""
        if self._queue is None:
            log_sync_event(logger, "sync_failure", key,
                           f"Remote {op_type.value} for {key} dropped, offline queue disabled: {reason}",
                           level=logging.WARNING)
            self._broker.publish(SyncEvent(
                EventType.SYNC_FAILURE, key, self._clock.now(),
                reason="offline_queue_disabled", details={"cause": reason}
            ))
            return

        op = self._queue.enqueue(op_type, key, value, failed_with=reason if failed else None)
        self._broker.publish(SyncEvent(
            EventType.SYNC_PENDING, key, self._clock.now(), reason=reason,
            details={"operation_id": op.id, "op_type": op_type.value}
        ))

    async def _send_operation(self, op: QueuedOperation) -> None:
        """Perform the remote call for one operation under the configured timeout."""
        self._metrics["remote_operations"] += 1
        timeout = self._config.remote_timeout_seconds
        if op.op_type == OperationType.SET:
            await call_with_timeout(self._remote.write(op.key, op.value), timeout, "write", op.key)
        else:
            await call_with_timeout(self._remote.delete(op.key), timeout, "delete", op.key)

    # Queue control

    async def flush(self, ignore_backoff: bool = False) -> FlushResult:
        """Drain the offline queue now."""
        if self._queue is None:
            return FlushResult(skipped=True)
        await self.wait_idle()
        return await self._queue.flush(ignore_backoff=ignore_backoff)

    async def flush_after_reconnect(self) -> FlushResult:
        """Drain the queue when connectivity returns, ignoring backoff delays."""
        if self._queue is None:
            return FlushResult(skipped=True)
        self._queue.wake()
        return await self._queue.flush(ignore_backoff=True)

    # Migration

    def migrate(self, legacy_keys: Iterable[str]) -> MigrationReport:
        """Copy legacy blobs into records once, marking completion with a sentinel."""
        migrator = LegacyMigrator(
            self._store, self._legacy_reader,
            lambda key, value: self._write_local(key, self.normalize_value(key, value),
                                                 schedule_remote=False)
        )
        try:
            report = migrator.run(
                legacy_keys, app_version=self._config.version,
                completed_at=self._clock.now().isoformat()
            )
        except StorageQuotaError as e:
            logger.warning(f"Legacy migration could not be recorded, will retry next start: {e}")
            return MigrationReport(ran=True)

        if report.ran:
            self._broker.publish(SyncEvent(
                EventType.MIGRATION_COMPLETED, None, self._clock.now(),
                details={"migrated": report.migrated, "skipped": report.skipped}
            ))
        return report

    # Diagnostics

    def list_keys(self, prefix: str = "") -> List[str]:
        """Application keys with a locally stored record."""
        keys = [storage_key[len(RECORD_PREFIX):] for storage_key in iter_prefixed(self._store, RECORD_PREFIX)]
        return sorted(key for key in keys if key.startswith(prefix))

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        return self._cache.clear(pattern)

    def is_persisted(self, key: str) -> bool:
        """Whether the latest value of a key reached the local store.

        False while the value is only held in memory after a quota failure.
        """
        return self._cache.get_pinned(key) is None

    def get_status(self) -> SyncStatus:
        return SyncStatus(
            online=self._state.online,
            pending_count=self._queue.pending_count() if self._queue is not None else 0,
            last_successful_sync=self._state.last_successful_sync,
        )

    def check_local_store(self) -> bool:
        """Check that the local store accepts writes."""
        try:
            self._store.set(HEALTH_CHECK_KEY, "test")
            self._store.remove(HEALTH_CHECK_KEY)
            return True
        except Exception as e:
            logger.warning(f"Local store health check failed: {e}")
            return False

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "cache": self._cache.stats(),
            "queue": self._queue.get_metrics() if self._queue is not None else None,
            "background_tasks": len(self._tasks),
        }
