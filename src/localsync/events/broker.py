"""Event broker for publishing synchronization status to subscribers."""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import AsyncIterator, Callable, Dict, Iterable, Optional, Set, Any

from ..sync.models import SyncEvent, EventType


logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by subscribe; call unsubscribe to stop delivery."""

    def __init__(self, broker: "SyncEventBroker", subscription_id: int,
                 event_types: Optional[Set[EventType]]):
        self._broker = broker
        self.subscription_id = subscription_id
        self.event_types = event_types
        self.active = True

    def matches(self, event: SyncEvent) -> bool:
        return self.event_types is None or event.event_type in self.event_types

    def unsubscribe(self) -> None:
        if self.active:
            self._broker._remove(self.subscription_id)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unsubscribe()


class SyncEventBroker:
    """Publish-subscribe channel for sync status events.

    Subscribers are plain callables or coroutine functions. A failing
    subscriber is logged and never affects the publisher or the other
    subscribers.
    """

    def __init__(self, channel_buffer_size: int = 1000):
        """Initialize the event broker.

        Args:
            channel_buffer_size: Maximum number of undelivered events held
                per async channel before the oldest are dropped
        """
        self._callbacks: Dict[int, Callable[[SyncEvent], Any]] = {}
        self._subscriptions: Dict[int, Subscription] = {}
        self._next_id = 0
        self._channel_buffer_size = channel_buffer_size
        self._pending_tasks: Set[asyncio.Task] = set()
        self._metrics: Dict[str, int] = defaultdict(int)

    def subscribe(self, callback: Callable[[SyncEvent], Any],
                  event_types: Optional[Iterable[EventType]] = None) -> Subscription:
        """Subscribe a callback to all events or to specific event types."""
        self._next_id += 1
        types = set(event_types) if event_types is not None else None
        subscription = Subscription(self, self._next_id, types)
        self._callbacks[subscription.subscription_id] = callback
        self._subscriptions[subscription.subscription_id] = subscription
        logger.debug(f"Subscriber {subscription.subscription_id} registered "
                     f"for {sorted(t.value for t in types) if types else 'all events'}")
        return subscription

    def _remove(self, subscription_id: int) -> None:
        self._callbacks.pop(subscription_id, None)
        self._subscriptions.pop(subscription_id, None)
        logger.debug(f"Subscriber {subscription_id} removed")

    def publish(self, event: SyncEvent) -> None:
        """Deliver an event to every matching subscriber."""
        self._metrics["events_published"] += 1
        self._metrics[f"published_{event.event_type.value}"] += 1

        for subscription_id, subscription in list(self._subscriptions.items()):
            if not subscription.matches(event):
                continue
            callback = self._callbacks.get(subscription_id)
            if callback is None:
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending_tasks.add(task)
                    task.add_done_callback(self._on_task_done)
                self._metrics["deliveries"] += 1
            except Exception as e:
                self._metrics["delivery_errors"] += 1
                logger.error(f"Error delivering {event.event_type.value} to subscriber "
                             f"{subscription_id}: {e}", exc_info=True)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._metrics["delivery_errors"] += 1
            logger.error(f"Async subscriber failed: {error}")

    async def channel(self, event_types: Optional[Iterable[EventType]] = None) -> AsyncIterator[SyncEvent]:
        """Iterate over events as they are published.

        The subscription is removed when the iterator is closed.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._channel_buffer_size)

        def enqueue(event: SyncEvent) -> None:
            if queue.full():
                queue.get_nowait()
                self._metrics["channel_overflows"] += 1
            queue.put_nowait(event)

        subscription = self.subscribe(enqueue, event_types)
        try:
            while True:
                yield await queue.get()
        finally:
            subscription.unsubscribe()

    async def drain(self) -> None:
        """Wait for async subscribers that are still running."""
        if self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)

    def get_subscriber_count(self) -> int:
        return len(self._subscriptions)

    def get_metrics(self) -> Dict[str, Any]:
        """Get delivery metrics for the event broker."""
        return {
            **self._metrics,
            "active_subscribers": len(self._subscriptions),
        }

    def close(self) -> None:
        """Remove all subscribers."""
        for subscription in list(self._subscriptions.values()):
            subscription.unsubscribe()
