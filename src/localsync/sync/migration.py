"""One-time migration of legacy flat keys into versioned records."""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from .exceptions import SerializationError
from .interfaces import KeyValueStore, LegacyStorageReader
from .logging_config import get_logger
from .models import MIGRATION_SENTINEL_KEY, Record, record_storage_key


logger = get_logger(__name__)


class FlatKeyLegacyReader(LegacyStorageReader):
    """Reads blobs that were written straight into the local store.

    Values are decoded as JSON when possible and returned as raw text
    otherwise.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    def read(self, key: str) -> Any:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return raw


@dataclass
class MigrationReport:
    """Outcome of a migration run."""
    ran: bool
    migrated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class LegacyMigrator:
    """Copies legacy blobs into the record format exactly once."""

    def __init__(self, store: KeyValueStore, reader: LegacyStorageReader,
                 write_record: Callable[[str, Any], Record],
                 sentinel_key: str = MIGRATION_SENTINEL_KEY):
        """Initialize the migrator.

        Args:
            store: Local store holding records and the sentinel
            reader: Source of legacy values
            write_record: Persists a migrated value as a new record
            sentinel_key: Key marking migration as complete
        """
        self._store = store
        self._reader = reader
        self._write_record = write_record
        self._sentinel_key = sentinel_key

    def is_complete(self) -> bool:
        return self._store.get(self._sentinel_key) is not None

    def run(self, legacy_keys: Iterable[str], app_version: Optional[str] = None,
            completed_at: Optional[str] = None) -> MigrationReport:
        """Migrate legacy keys unless the sentinel says it already happened.

        A key is skipped when it has no legacy value, its value cannot be
        stored as JSON, or a migrated record already exists for it.
        """
        if self.is_complete():
            logger.debug("Legacy migration already complete")
            return MigrationReport(ran=False)

        report = MigrationReport(ran=True)
        for key in legacy_keys:
            if self._store.get(record_storage_key(key)) is not None:
                report.skipped.append(key)
                continue
            value = self._reader.read(key)
            if value is None:
                report.skipped.append(key)
                continue
            try:
                self._write_record(key, value)
            except SerializationError as e:
                logger.warning(f"Skipping legacy key {key}: {e}")
                report.skipped.append(key)
                continue
            report.migrated.append(key)
            logger.info(f"Migrated legacy key {key}")

        self._store.set(self._sentinel_key, json.dumps({
            "completed_at": completed_at,
            "app_version": app_version,
            "migrated": report.migrated,
        }))
        logger.info(f"Legacy migration complete: {len(report.migrated)} migrated, "
                    f"{len(report.skipped)} skipped")
        return report
