"""Tests for sync data models and exceptions."""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from localsync.sync.exceptions import (
    ConfigurationError, NetworkError, RemotePermissionError, SerializationError, StorageQuotaError, SyncError
)
from localsync.sync.models import (
    FlushResult, NOT_FOUND, OperationState, OperationType, QueuedOperation, Record, SyncStatus
)


def test_record_version_must_be_positive():
    with pytest.raises(ValidationError):
        Record(key="k", value=1, version=0)


def test_record_round_trips_through_json():
    record = Record(key="k", value={"a": [1, 2]}, version=3, updated_at=datetime(2024, 1, 1))
    assert Record.model_validate_json(record.model_dump_json()) == record


def test_queued_operation_readiness():
    now = datetime(2024, 1, 1, 12, 0, 0)
    op = QueuedOperation(op_type=OperationType.SET, key="k", value=1, enqueued_at=now)
    assert op.is_ready(now)

    op.next_attempt_at = now + timedelta(seconds=5)
    assert not op.is_ready(now)
    assert op.is_ready(now + timedelta(seconds=5))

    op.state = OperationState.IN_FLIGHT
    assert not op.is_ready(now + timedelta(seconds=10))


def test_not_found_is_falsy_singleton():
    assert not NOT_FOUND
    assert type(NOT_FOUND)() is NOT_FOUND
    assert repr(NOT_FOUND) == "NOT_FOUND"


def test_status_to_dict():
    status = SyncStatus(online=True, pending_count=2, last_successful_sync=datetime(2024, 1, 1))
    assert status.to_dict() == {
        "online": True, "pending_count": 2, "last_successful_sync": "2024-01-01T00:00:00"
    }


def test_flush_result_attempted():
    assert FlushResult(committed=1, retried=2, dropped=3, superseded=4).attempted == 10


def test_exceptions_share_base_and_serialize():
    errors = [
        StorageQuotaError("k", 10, 5),
        NetworkError("write", "k", "refused"),
        RemotePermissionError("write", "k", "HTTP 403", 403),
        SerializationError("k", "NaN"),
        ConfigurationError(["bad"]),
    ]
    codes = [e.error_code for e in errors]

    assert all(isinstance(e, SyncError) for e in errors)
    assert codes == ["storage_quota_exceeded", "network_error", "permission_denied",
                     "serialization_error", "configuration_error"]
    serialized = errors[1].to_dict()
    assert serialized["details"]["retryable"] is True
    assert "timestamp" in serialized
