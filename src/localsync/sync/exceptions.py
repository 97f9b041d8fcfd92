"""Custom exceptions for the local-first synchronization engine."""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncError(Exception):
    """Base exception for synchronization errors."""

    def __init__(self, message: str, error_code: str = "sync_error",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class StorageQuotaError(SyncError):
    """Raised by a local store when a write would exceed its capacity quota."""

    def __init__(self, key: str, required_bytes: int, quota_bytes: int):
        message = (f"Storage quota exceeded writing {key}: "
                   f"{required_bytes} bytes required, quota is {quota_bytes}")
        details = {
            "key": key,
            "required_bytes": required_bytes,
            "quota_bytes": quota_bytes
        }
        super().__init__(message, "storage_quota_exceeded", details)


class NetworkError(SyncError):
    """Raised when the remote store is unreachable or a call timed out.

    Network errors are retryable.
    """

    def __init__(self, operation: str, key: str, reason: str):
        message = f"Remote {operation} failed for {key}: {reason}"
        details = {
            "operation": operation,
            "key": key,
            "reason": reason,
            "retryable": True
        }
        super().__init__(message, "network_error", details)


class RemotePermissionError(SyncError):
    """Raised when the remote store rejects an operation.

    Permission errors are terminal for the operation and must not be retried.
    """

    def __init__(self, operation: str, key: str, reason: str, status_code: Optional[int] = None):
        message = f"Remote {operation} rejected for {key}: {reason}"
        details = {
            "operation": operation,
            "key": key,
            "reason": reason,
            "status_code": status_code,
            "retryable": False
        }
        super().__init__(message, "permission_denied", details)


class SerializationError(SyncError):
    """Raised when a value does not round-trip through JSON."""

    def __init__(self, key: str, reason: str):
        message = f"Value for {key} is not serializable: {reason}"
        details = {
            "key": key,
            "reason": reason
        }
        super().__init__(message, "serialization_error", details)


class ConfigurationError(SyncError, ValueError):
    """Raised when engine configuration is invalid."""

    def __init__(self, errors: list):
        message = f"Configuration validation failed: {'; '.join(errors)}"
        super().__init__(message, "configuration_error", {"errors": list(errors)})
