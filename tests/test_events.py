import asyncio
import json

import pytest
from redis.exceptions import RedisError

from fulfillment.services.events import (
    InMemoryEventBroadcaster,
    KotCreated,
    OrderCreated,
    OrderStatusChanged,
    OrderUpdated,
    RedisEventBroadcaster,
    ResyncTick,
    ResyncingObserver,
    TableStatusChanged,
    event_from_dict,
    get_event_broadcaster,
    iter_events_with_resync,
    reset_event_broadcaster,
    scope_predicate,
    sse_frames,
    to_sse_frame,
)
from fulfillment.services.store import publish_safely


class FakePubSub:
    def __init__(self, drops=1, messages=()):
        self.drops = drops
        self.messages = list(messages)
        self.subscriptions = 0

    async def subscribe(self, channel):
        self.subscriptions += 1

    async def unsubscribe(self, channel):
        raise ConnectionError("connection reset by peer")

    async def aclose(self):
        pass

    async def listen(self):
        if self.drops:
            self.drops -= 1
            raise ConnectionError("connection reset by peer")
        for message in self.messages:
            yield message
        await asyncio.Event().wait()


class FakeRedis:
    """Just the client surface the broadcaster touches."""

    def __init__(self, fail=False, pubsub=None):
        self.fail = fail
        self._pubsub = pubsub or FakePubSub(drops=0)
        self.published = []
        self.closed = False

    async def publish(self, channel, payload):
        if self.fail:
            raise RedisError("connection refused")
        self.published.append((channel, payload))
        return 1

    async def ping(self):
        if self.fail:
            raise RedisError("connection refused")
        return True

    async def aclose(self):
        self.closed = True

    def pubsub(self, ignore_subscribe_messages=False):
        return self._pubsub


class BrokenBroadcaster(InMemoryEventBroadcaster):
    def publish(self, event):
        raise RuntimeError("transport exploded")


def drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


# =============================================================================
# WIRE FORMAT
# =============================================================================

def test_event_wire_format():
    event = OrderCreated(vendor_id=1, order_id=5, channel="dining", table_id=2)

    assert event.to_dict() == {
        "type": "order-created",
        "vendorId": 1,
        "orderId": 5,
        "channel": "dining",
        "tableId": 2,
    }
    assert event_from_dict(event.to_dict()) == event


def test_event_from_dict_rejects_unknown_type():
    with pytest.raises(ValueError):
        event_from_dict({"type": "order-exploded", "vendorId": 1})


def test_sse_frames_are_unnamed():
    assert to_sse_frame({"type": "order-updated", "orderId": 1}) == 'data: {"type": "order-updated", "orderId": 1}\n\n'


# =============================================================================
# FAN-OUT
# =============================================================================

async def test_publish_reaches_every_subscriber():
    broadcaster = InMemoryEventBroadcaster()
    first, second = broadcaster.subscribe(), broadcaster.subscribe()
    event = OrderStatusChanged(vendor_id=1, order_id=3, status="accepted")

    broadcaster.publish(event)

    assert drain(first) == [event]
    assert drain(second) == [event]


async def test_scope_predicate_filters_by_vendor_and_table():
    broadcaster = InMemoryEventBroadcaster()
    subscription = broadcaster.subscribe(scope_predicate(vendor_id=1, table_id=2))

    broadcaster.publish(OrderUpdated(vendor_id=1, order_id=1, table_id=2))
    broadcaster.publish(OrderUpdated(vendor_id=1, order_id=2, table_id=3))
    broadcaster.publish(OrderUpdated(vendor_id=2, order_id=3, table_id=2))
    broadcaster.publish(KotCreated(vendor_id=1, order_id=4, kot_id=1, ticket_number="KOT-1"))

    assert [e.order_id for e in drain(subscription)] == [1, 4]


async def test_full_buffer_drops_only_for_the_slow_subscriber():
    broadcaster = InMemoryEventBroadcaster(max_queue=2)
    slow, fast = broadcaster.subscribe(), broadcaster.subscribe()

    received = []
    for order_id in (1, 2, 3):
        broadcaster.publish(OrderUpdated(vendor_id=1, order_id=order_id))
        received.extend(drain(fast))

    assert [e.order_id for e in received] == [1, 2, 3]
    assert [e.order_id for e in drain(slow)] == [1, 2]
    assert slow.dropped == 1
    assert fast.dropped == 0


async def test_failing_predicate_skips_only_that_subscriber():
    broadcaster = InMemoryEventBroadcaster()
    broken = broadcaster.subscribe(lambda event: 1 / 0)
    healthy = broadcaster.subscribe()

    broadcaster.publish(TableStatusChanged(vendor_id=1, table_id=2, is_active=False))

    assert drain(broken) == []
    assert len(drain(healthy)) == 1


async def test_unsubscribe_stops_delivery():
    broadcaster = InMemoryEventBroadcaster()
    subscription = broadcaster.subscribe()
    subscription.unsubscribe()

    broadcaster.publish(OrderUpdated(vendor_id=1, order_id=1))

    assert broadcaster.subscriber_count == 0
    assert drain(subscription) == []


async def test_unsubscribe_wakes_a_waiting_iterator():
    broadcaster = InMemoryEventBroadcaster()
    subscription = broadcaster.subscribe()

    async def consume():
        return [event async for event in subscription]

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    subscription.unsubscribe()

    assert await asyncio.wait_for(consumer, timeout=1) == []


async def test_close_drops_every_subscriber():
    broadcaster = InMemoryEventBroadcaster()
    broadcaster.subscribe()
    broadcaster.subscribe()

    await broadcaster.close()

    assert broadcaster.subscriber_count == 0


def test_publish_safely_swallows_transport_errors():
    publish_safely(BrokenBroadcaster(), OrderUpdated(vendor_id=1, order_id=1))
    publish_safely(None, OrderUpdated(vendor_id=1, order_id=1))


def test_factory_uses_in_memory_in_development():
    reset_event_broadcaster()
    try:
        broadcaster = get_event_broadcaster()
        assert isinstance(broadcaster, InMemoryEventBroadcaster)
        assert broadcaster is get_event_broadcaster()
    finally:
        reset_event_broadcaster()


# =============================================================================
# RESYNC
# =============================================================================

async def test_stream_yields_events_then_ticks():
    broadcaster = InMemoryEventBroadcaster()
    subscription = broadcaster.subscribe()
    event = OrderUpdated(vendor_id=1, order_id=7)
    broadcaster.publish(event)

    stream = iter_events_with_resync(subscription, interval=0.05)
    first = await asyncio.wait_for(stream.__anext__(), timeout=1)
    second = await asyncio.wait_for(stream.__anext__(), timeout=1)
    await stream.aclose()

    assert first == event
    assert isinstance(second, ResyncTick)


async def test_ticks_arrive_without_any_events():
    broadcaster = InMemoryEventBroadcaster()
    stream = iter_events_with_resync(broadcaster.subscribe(), interval=0.02)

    ticks = [await asyncio.wait_for(stream.__anext__(), timeout=1) for _ in range(3)]
    await stream.aclose()

    assert all(isinstance(tick, ResyncTick) for tick in ticks)


async def test_observer_refreshes_on_events_and_ticks():
    broadcaster = InMemoryEventBroadcaster()
    seen = []

    async def refresh(item):
        seen.append(item)

    observer = ResyncingObserver(broadcaster, refresh, predicate=scope_predicate(vendor_id=1), interval=0.05)
    observer.start()
    await asyncio.sleep(0.01)
    broadcaster.publish(OrderUpdated(vendor_id=1, order_id=1))
    broadcaster.publish(OrderUpdated(vendor_id=2, order_id=2))
    await asyncio.sleep(0.15)
    await observer.stop()

    events = [item for item in seen if not isinstance(item, ResyncTick)]
    assert [e.order_id for e in events] == [1]
    assert any(isinstance(item, ResyncTick) for item in seen)
    assert broadcaster.subscriber_count == 0


async def test_observer_survives_failing_refresh():
    broadcaster = InMemoryEventBroadcaster()
    calls = []

    async def refresh(item):
        calls.append(item)
        if len(calls) == 1:
            raise ConnectionError("api down")

    observer = ResyncingObserver(broadcaster, refresh, interval=0.02)
    observer.start()
    await asyncio.sleep(0.15)
    await observer.stop()

    assert observer.failures == 1
    assert observer.refresh_count >= 1


async def test_sse_frames_sequence():
    broadcaster = InMemoryEventBroadcaster()
    subscription = broadcaster.subscribe()
    broadcaster.publish(OrderUpdated(vendor_id=1, order_id=9))

    frames = sse_frames(subscription, interval=0.05, hello={"vendorId": 1})
    connected = await frames.__anext__()
    event = await asyncio.wait_for(frames.__anext__(), timeout=1)
    resync = await asyncio.wait_for(frames.__anext__(), timeout=1)
    await frames.aclose()

    assert connected.startswith('data: {"type": "connected"')
    assert '"vendorId": 1' in connected
    assert event.startswith('data: {"type": "order-updated"')
    assert '"orderId": 9' in event
    assert resync.startswith('data: {"type": "resync"')
    assert not any(frame.startswith("event:") for frame in (connected, event, resync))
    assert subscription.closed
    assert broadcaster.subscriber_count == 0


async def test_sse_frames_stop_when_client_disconnects():
    broadcaster = InMemoryEventBroadcaster()
    subscription = broadcaster.subscribe()
    broadcaster.publish(OrderUpdated(vendor_id=1, order_id=9))

    async def gone():
        return True

    frames = [frame async for frame in sse_frames(subscription, interval=0.05, is_disconnected=gone)]

    assert len(frames) == 1
    assert subscription.closed


# =============================================================================
# REDIS
# =============================================================================

async def test_redis_publish_failure_delivers_locally():
    client = FakeRedis(fail=True)
    broadcaster = RedisEventBroadcaster(channel="test:events", client=client)
    subscription = broadcaster.subscribe()
    event = OrderCreated(vendor_id=1, order_id=1, channel="pickup")

    broadcaster.publish(event)
    await asyncio.sleep(0.01)

    assert drain(subscription) == [event]
    assert await broadcaster.health_check() is False
    await broadcaster.close()


async def test_redis_publish_without_listener_delivers_locally():
    client = FakeRedis()
    broadcaster = RedisEventBroadcaster(channel="test:events", client=client)
    subscription = broadcaster.subscribe()
    event = OrderUpdated(vendor_id=1, order_id=4)

    broadcaster.publish(event)
    await asyncio.sleep(0.01)

    assert drain(subscription) == [event]
    assert client.published[0][0] == "test:events"
    assert '"type": "order-updated"' in client.published[0][1]
    assert await broadcaster.health_check() is True
    await broadcaster.close()
    assert client.closed


def test_redis_publish_without_event_loop_delivers_locally():
    broadcaster = RedisEventBroadcaster(channel="test:events", client=FakeRedis())
    subscription = broadcaster.subscribe()

    broadcaster.publish(OrderUpdated(vendor_id=1, order_id=4))

    assert subscription.queue.qsize() == 1


async def test_unscoped_stream_forwards_every_vendor():
    broadcaster = InMemoryEventBroadcaster()
    subscription = broadcaster.subscribe(scope_predicate())
    broadcaster.publish(OrderUpdated(vendor_id=1, order_id=1))
    broadcaster.publish(OrderUpdated(vendor_id=2, order_id=2))

    frames = sse_frames(subscription, interval=5)
    await frames.__anext__()
    received = [await asyncio.wait_for(frames.__anext__(), timeout=1) for _ in range(2)]
    await frames.aclose()

    assert '"vendorId": 1' in received[0]
    assert '"vendorId": 2' in received[1]


async def test_redis_dropped_subscription_delivers_locally():
    client = FakeRedis(pubsub=FakePubSub(drops=1))
    broadcaster = RedisEventBroadcaster(channel="test:events", client=client, reconnect_delay=60)
    subscription = broadcaster.subscribe()
    await broadcaster.start()
    await asyncio.sleep(0.01)

    event = OrderUpdated(vendor_id=1, order_id=4)
    broadcaster.publish(event)
    await asyncio.sleep(0.01)

    assert not broadcaster._listener.done()
    assert drain(subscription) == [event]
    await broadcaster.close()
    assert client.closed


async def test_redis_listener_resubscribes_after_drop():
    event = OrderStatusChanged(vendor_id=1, order_id=4, status="accepted")
    pubsub = FakePubSub(drops=1, messages=[{"type": "message", "data": json.dumps(event.to_dict())}])
    broadcaster = RedisEventBroadcaster(channel="test:events", client=FakeRedis(pubsub=pubsub), reconnect_delay=0.01)
    subscription = broadcaster.subscribe()

    await broadcaster.start()
    received = await subscription.get(timeout=1)

    assert received == event
    assert pubsub.subscriptions == 2
    await broadcaster.close()
