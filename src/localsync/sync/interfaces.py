"""Base interfaces for synchronization components."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional


class KeyValueStore(ABC):
    """Interface for durable local key-value storage.

    Values are JSON text. All operations are local and never raise for
    missing keys.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored text for a key, or None if absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store text under a key.

        Raises:
            StorageQuotaError: If the write would exceed the store quota
        """
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key. Removing a missing key is a no-op."""
        pass

    @abstractmethod
    def keys(self) -> Iterable[str]:
        """Return all stored keys."""
        pass

    def usage_bytes(self) -> int:
        """Approximate number of bytes in use."""
        return 0


class RemoteDocumentClient(ABC):
    """Interface for the remote document store.

    Every method may raise NetworkError (retryable) or
    RemotePermissionError (terminal). Implementations must not retry.
    """

    @abstractmethod
    async def read(self, key: str) -> Any:
        """Read a document, returning NOT_FOUND when it does not exist."""
        pass

    @abstractmethod
    async def write(self, key: str, value: Any) -> None:
        """Create or replace a document."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a document. Deleting a missing document succeeds."""
        pass


class ConnectivitySource(ABC):
    """Interface for the platform online/offline signal."""

    @abstractmethod
    def is_online(self) -> bool:
        """Report the current connectivity."""
        pass

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register a callback for connectivity changes.

        Sources that can only be polled return a no-op unsubscribe.
        """
        return lambda: None


class LegacyStorageReader(ABC):
    """Read-only access to data written before the engine existed."""

    @abstractmethod
    def read(self, key: str) -> Any:
        """Return the legacy value for a key, or None if there is none."""
        pass
