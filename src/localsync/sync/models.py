"""Data models for local-first synchronization."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class RecordOrigin(str, Enum):
    """Where the current value of a record came from."""
    LOCAL = "local"
    REMOTE = "remote"


class OperationType(str, Enum):
    """Types of queued remote operations."""
    SET = "set"
    REMOVE = "remove"


class OperationState(str, Enum):
    """States of a queued operation.

    Committed operations are removed from the queue, so there is no
    committed state stored here.
    """
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class EventType(Enum):
    """Types of synchronization events published to subscribers."""
    SYNC_PENDING = "sync_pending"
    SYNC_COMMITTED = "sync_committed"
    SYNC_FAILURE = "sync_failure"
    STORAGE_WARNING = "storage_warning"
    CONNECTIVITY_CHANGED = "connectivity_changed"
    MIGRATION_COMPLETED = "migration_completed"


class _NotFound:
    """Sentinel returned by remote reads for a missing document."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound()


# Pydantic models for records persisted in the local store

class Record(BaseModel):
    """A versioned value stored by the engine."""
    key: str
    value: Any = None
    version: int = Field(ge=1)
    updated_at: datetime = Field(default_factory=datetime.now)
    origin: RecordOrigin = RecordOrigin.LOCAL


class QueuedOperation(BaseModel):
    """A remote write waiting to be replayed."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    op_type: OperationType
    key: str
    value: Any = None
    enqueued_at: datetime = Field(default_factory=datetime.now)
    attempts: int = 0
    state: OperationState = OperationState.PENDING
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def is_ready(self, now: datetime) -> bool:
        """Check whether the operation may be sent at ``now``."""
        if self.state != OperationState.PENDING:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now


@dataclass
class SyncState:
    """Mutable synchronization state shared by the engine components."""
    online: bool = True
    last_successful_sync: Optional[datetime] = None
    pending_count: int = 0


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of the synchronization state for diagnostics."""
    online: bool
    pending_count: int
    last_successful_sync: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "online": self.online,
            "pending_count": self.pending_count,
            "last_successful_sync": (
                self.last_successful_sync.isoformat() if self.last_successful_sync else None
            ),
        }


@dataclass
class SyncEvent:
    """Represents a synchronization event delivered to subscribers."""
    event_type: EventType
    key: Optional[str]
    timestamp: datetime
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FlushResult:
    """Outcome of a single queue drain."""
    committed: int = 0
    retried: int = 0
    dropped: int = 0
    superseded: int = 0
    skipped: bool = False

    @property
    def attempted(self) -> int:
        return self.committed + self.retried + self.dropped + self.superseded


# Local storage layout. Application records and engine bookkeeping live
# under separate prefixes; legacy blobs use bare keys.
RECORD_PREFIX = "data:"
INTERNAL_PREFIX = "__sync__:"
QUEUE_STORAGE_KEY = f"{INTERNAL_PREFIX}queue"
MIGRATION_SENTINEL_KEY = f"{INTERNAL_PREFIX}migration"
VERSION_PREFIX = f"{INTERNAL_PREFIX}version:"


def record_storage_key(key: str) -> str:
    return f"{RECORD_PREFIX}{key}"


def version_storage_key(key: str) -> str:
    return f"{VERSION_PREFIX}{key}"
