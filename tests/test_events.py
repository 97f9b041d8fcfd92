"""Tests for the sync event broker."""

import asyncio
from datetime import datetime
from unittest.mock import Mock

from localsync.events.broker import SyncEventBroker
from localsync.sync.models import EventType, SyncEvent


def make_event(event_type=EventType.SYNC_COMMITTED, key="theme"):
    return SyncEvent(event_type, key, datetime(2024, 1, 1))


def test_subscribers_receive_matching_events():
    broker = SyncEventBroker()
    everything, failures = [], []
    broker.subscribe(everything.append)
    broker.subscribe(failures.append, [EventType.SYNC_FAILURE])

    broker.publish(make_event(EventType.SYNC_COMMITTED))
    broker.publish(make_event(EventType.SYNC_FAILURE))

    assert len(everything) == 2
    assert [e.event_type for e in failures] == [EventType.SYNC_FAILURE]
    assert broker.get_metrics()["events_published"] == 2


def test_unsubscribe_and_context_manager():
    broker = SyncEventBroker()
    seen = []

    with broker.subscribe(seen.append):
        broker.publish(make_event())
        assert broker.get_subscriber_count() == 1

    broker.publish(make_event())
    assert len(seen) == 1
    assert broker.get_subscriber_count() == 0


def test_failing_subscriber_does_not_affect_others():
    broker = SyncEventBroker()
    seen = []
    broker.subscribe(Mock(side_effect=RuntimeError("subscriber bug")))
    broker.subscribe(seen.append)

    broker.publish(make_event())

    assert len(seen) == 1
    assert broker.get_metrics()["delivery_errors"] == 1


def test_async_subscribers_are_scheduled():
    async def run_test():
        broker = SyncEventBroker()
        seen = []

        async def on_event(event):
            seen.append(event.key)

        async def broken(event):
            raise RuntimeError("async subscriber bug")

        broker.subscribe(on_event)
        broker.subscribe(broken)
        broker.publish(make_event(key="a"))
        await broker.drain()

        assert seen == ["a"]

    asyncio.run(run_test())


def test_channel_yields_events_and_drops_oldest_on_overflow():
    async def run_test():
        broker = SyncEventBroker(channel_buffer_size=2)
        stream = broker.channel([EventType.SYNC_PENDING])

        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        broker.publish(make_event(EventType.SYNC_PENDING, "a"))
        assert (await first).key == "a"

        for key in ["b", "c", "d"]:
            broker.publish(make_event(EventType.SYNC_PENDING, key))
        broker.publish(make_event(EventType.SYNC_COMMITTED, "ignored"))

        assert (await stream.__anext__()).key == "c"
        assert (await stream.__anext__()).key == "d"
        assert broker.get_metrics()["channel_overflows"] == 1

        await stream.aclose()
        assert broker.get_subscriber_count() == 0

    asyncio.run(run_test())


def test_close_removes_subscribers():
    broker = SyncEventBroker()
    broker.subscribe(Mock())
    broker.subscribe(Mock())
    broker.close()
    assert broker.get_subscriber_count() == 0
