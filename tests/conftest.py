"""
Pytest configuration and fixtures for the test suite.
"""
import asyncio
import copy
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from hypothesis import settings

from localsync.storage import MemoryKeyValueStore
from localsync.sync.clock import Clock
from localsync.sync.connectivity import ManualConnectivitySource
from localsync.sync.exceptions import NetworkError, RemotePermissionError
from localsync.sync.interfaces import LegacyStorageReader, RemoteDocumentClient
from localsync.sync.models import NOT_FOUND

# Configure Hypothesis settings for all tests
# Disable deadline to avoid flaky failures during parallel execution
settings.register_profile("default", deadline=None)
settings.load_profile("default")


class FakeClock(Clock):
    """Clock whose time only moves when a test advances it.

    Sleepers wake once ``advance`` moves the clock past their deadline.
    """

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.current = start
        self._sleepers: List[Tuple[datetime, asyncio.Future]] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        for deadline, future in list(self._sleepers):
            if deadline <= self.current and not future.done():
                future.set_result(None)

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        entry = (self.current + timedelta(seconds=seconds), asyncio.get_running_loop().create_future())
        self._sleepers.append(entry)
        try:
            await entry[1]
        finally:
            self._sleepers.remove(entry)

    @property
    def sleeper_count(self) -> int:
        return len(self._sleepers)


class FakeRemoteClient(RemoteDocumentClient):
    """In-memory remote document store with failure injection.

    ``failure`` is None, "network" or "permission". When ``fail_keys`` is
    non-empty only those keys fail.
    """

    def __init__(self, documents: Optional[Dict[str, Any]] = None):
        self.documents: Dict[str, Any] = dict(documents or {})
        self.calls: List[Tuple[str, str, Any]] = []
        self.failure: Optional[str] = None
        self.fail_keys: Set[str] = set()
        self.delay_seconds = 0.0

    def _maybe_fail(self, operation: str, key: str) -> None:
        if self.failure is None or (self.fail_keys and key not in self.fail_keys):
            return
        if self.failure == "permission":
            raise RemotePermissionError(operation, key, "HTTP 403", 403)
        raise NetworkError(operation, key, "connection refused")

    async def read(self, key: str) -> Any:
        self.calls.append(("read", key, None))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self._maybe_fail("read", key)
        if key not in self.documents:
            return NOT_FOUND
        return copy.deepcopy(self.documents[key])

    async def write(self, key: str, value: Any) -> None:
        self.calls.append(("write", key, copy.deepcopy(value)))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self._maybe_fail("write", key)
        self.documents[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self.calls.append(("delete", key, None))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self._maybe_fail("delete", key)
        self.documents.pop(key, None)

    def calls_for(self, method: str, key: Optional[str] = None) -> List[Tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == method and (key is None or call[1] == key)]


class CountingLegacyReader(LegacyStorageReader):
    """Legacy data source that counts how often it is consulted."""

    def __init__(self, values: Dict[str, Any]):
        self.values = values
        self.read_count = 0

    def read(self, key: str) -> Any:
        self.read_count += 1
        return self.values.get(key)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_remote():
    return FakeRemoteClient()


@pytest.fixture
def memory_store():
    return MemoryKeyValueStore()


@pytest.fixture
def connectivity():
    return ManualConnectivitySource(online=True)
