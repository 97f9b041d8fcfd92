"""Connectivity monitoring and queue draining on reconnect."""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from requests import Session
from requests.exceptions import RequestException

from ..events.broker import SyncEventBroker
from .clock import Clock
from .interfaces import ConnectivitySource
from .logging_config import get_logger
from .models import EventType, SyncEvent, SyncState


logger = get_logger(__name__)


class ManualConnectivitySource(ConnectivitySource):
    """Connectivity signal pushed by the platform (online/offline events)."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Callable[[bool], None]] = []

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        for listener in list(self._listeners):
            listener(online)

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe


class HttpHeadConnectivitySource(ConnectivitySource):
    """Connectivity derived from probing a URL with a HEAD request.

    The request blocks, so the monitor calls it from a worker thread.
    """

    def __init__(self, url: str, session: Optional[Session] = None, timeout_seconds: float = 3.0):
        self.url = url
        self.session = session or Session()
        self.timeout_seconds = timeout_seconds

    def is_online(self) -> bool:
        try:
            response = self.session.head(self.url, timeout=self.timeout_seconds)
        except RequestException as e:
            logger.debug(f"Connectivity check against {self.url} failed: {e}")
            return False
        return response.status_code < 500


class ConnectivityMonitor:
    """Tracks online/offline transitions and drains the offline queue on reconnect."""

    def __init__(self, broker: SyncEventBroker, state: SyncState, clock: Clock,
                 source: Optional[ConnectivitySource] = None,
                 on_reconnect: Optional[Callable[[], Awaitable[object]]] = None,
                 poll_interval_seconds: Optional[float] = None):
        """Initialize the connectivity monitor.

        Args:
            broker: Event broker for connectivity events
            state: Shared sync state whose ``online`` flag this monitor owns
            clock: Time source for event timestamps
            source: Platform connectivity signal; None means always online
            on_reconnect: Coroutine function draining the queue
            poll_interval_seconds: How often to re-read the source (None disables polling)
        """
        self._broker = broker
        self._state = state
        self._clock = clock
        self._source = source
        self._on_reconnect = on_reconnect
        self._poll_interval = poll_interval_seconds

        self._listeners: Dict[int, Callable[[bool], None]] = {}
        self._next_listener_id = 0
        self._source_unsubscribe: Optional[Callable[[], None]] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._stats = {
            "transitions": 0,
            "flushes_triggered": 0,
            "flushes_coalesced": 0,
        }

    def set_reconnect_handler(self, on_reconnect: Callable[[], Awaitable[object]]) -> None:
        self._on_reconnect = on_reconnect

    async def start(self) -> None:
        """Read the initial state, follow source signals and start polling."""
        if self._source is not None:
            self._state.online = await asyncio.to_thread(self._source.is_online)
            self._source_unsubscribe = self._source.subscribe(self.set_online)
        else:
            self._state.online = True

        if self._poll_interval and self._source is not None and self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())

        logger.info(f"Connectivity monitor started (online: {self._state.online})")

    async def stop(self) -> None:
        """Stop following the source and wait for a triggered flush to end."""
        if self._source_unsubscribe is not None:
            self._source_unsubscribe()
            self._source_unsubscribe = None

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self.flush_in_progress:
            await asyncio.gather(self._flush_task, return_exceptions=True)

        logger.info("Connectivity monitor stopped")

    async def _poll_loop(self) -> None:
        while True:
            await self._clock.sleep(self._poll_interval)
            try:
                online = await asyncio.to_thread(self._source.is_online)
            except Exception as e:
                logger.warning(f"Connectivity source failed, assuming offline: {e}")
                online = False
            self.set_online(online)

    def is_online(self) -> bool:
        return self._state.online

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register a callback invoked with the new state on every transition.

        Returns:
            Function removing the callback
        """
        self._next_listener_id += 1
        listener_id = self._next_listener_id
        self._listeners[listener_id] = callback

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        """Record a connectivity signal; reconnects trigger one queue flush."""
        previous = self._state.online
        if online == previous:
            return

        self._state.online = online
        self._stats["transitions"] += 1
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")

        for listener_id, listener in list(self._listeners.items()):
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener {listener_id} failed: {e}", exc_info=True)

        self._broker.publish(SyncEvent(
            EventType.CONNECTIVITY_CHANGED, None, self._clock.now(),
            details={"online": online}
        ))

        if online:
            self._trigger_flush()

    @property
    def flush_in_progress(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def _trigger_flush(self) -> None:
        if self._on_reconnect is None:
            return
        if self.flush_in_progress:
            self._stats["flushes_coalesced"] += 1
            logger.debug("Flush already running, coalescing reconnect trigger")
            return
        try:
            self._flush_task = asyncio.get_running_loop().create_task(self._run_flush())
        except RuntimeError:
            logger.warning("No running event loop; queued operations will flush on the next schedule")
            return
        self._stats["flushes_triggered"] += 1

    async def _run_flush(self) -> None:
        try:
            await self._on_reconnect()
        except Exception as e:
            logger.error(f"Flush after reconnect failed: {e}", exc_info=True)

    async def wait_for_flush(self) -> None:
        """Wait until a flush triggered by a reconnect has finished."""
        if self._flush_task is not None:
            await asyncio.gather(self._flush_task, return_exceptions=True)

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "online": self._state.online}
