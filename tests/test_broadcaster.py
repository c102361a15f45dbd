# tests/test_broadcaster.py

import asyncio
import threading

import pytest

from livetrack.broadcaster import (
    AsyncQueueSink,
    Broadcaster,
    ChannelKey,
    QueueSink,
    RecentEventsSink,
    SinkClosed,
)
from livetrack.models import Event, EventType, Order, OrderStatus

from conftest import make_sample

ORDER = "a" * 32


class FailingSink:
    def __init__(self):
        self.closed = False

    def send(self, event):
        raise ConnectionResetError("client went away")

    def close(self):
        self.closed = True


def lats(events):
    return [e.payload["lat"] for e in events if e.type is EventType.LOCATION]


def test_publish_replaces_latest(broadcaster):
    assert broadcaster.latest(ORDER) is None
    broadcaster.publish(ORDER, make_sample(ORDER, 13.0, 80.0))
    broadcaster.publish(ORDER, make_sample(ORDER, 13.1, 80.1))
    assert broadcaster.latest(ORDER).lat == 13.1


def test_subscribers_receive_samples_in_order(broadcaster):
    sink = QueueSink()
    broadcaster.subscribe(ChannelKey.order(ORDER), sink)
    for i in range(5):
        broadcaster.publish(ORDER, make_sample(ORDER, 13.0 + i, 80.0))
    assert lats(sink.drain()) == [13.0, 14.0, 15.0, 16.0, 17.0]


def test_late_joiner_gets_current_sample_first(broadcaster):
    broadcaster.publish(ORDER, make_sample(ORDER, 13.0, 80.0))
    broadcaster.publish(ORDER, make_sample(ORDER, 13.5, 80.0))

    sink = QueueSink()
    broadcaster.subscribe(ChannelKey.order(ORDER), sink)
    broadcaster.publish(ORDER, make_sample(ORDER, 14.0, 80.0))

    assert lats(sink.drain()) == [13.5, 14.0]


def test_early_subscriber_gets_nothing_until_publish(broadcaster):
    sink = QueueSink()
    broadcaster.subscribe(ChannelKey.order(ORDER), sink)
    assert sink.drain() == []


def test_failing_subscriber_is_dropped_and_fanout_continues(broadcaster):
    bad, good = FailingSink(), QueueSink()
    channel = ChannelKey.order(ORDER)
    bad_sub = broadcaster.subscribe(channel, bad)
    broadcaster.subscribe(channel, good)

    delivered = broadcaster.publish(ORDER, make_sample(ORDER, 13.0, 80.0))

    assert delivered == 1
    assert bad.closed
    assert not bad_sub.active
    assert broadcaster.subscriber_count(channel) == 1
    assert lats(good.drain()) == [13.0]


def test_location_stays_on_order_channel(broadcaster):
    owner, admin = QueueSink(), QueueSink()
    broadcaster.subscribe(ChannelKey.owner("owner-1"), owner)
    broadcaster.subscribe(ChannelKey.admin(), admin)

    broadcaster.publish(ORDER, make_sample(ORDER, 13.0, 80.0))
    assert owner.drain() == []
    assert admin.drain() == []


def test_lifecycle_events_reach_order_owner_and_admin(broadcaster):
    order_sink, owner, other_owner, admin = QueueSink(), QueueSink(), QueueSink(), QueueSink()
    broadcaster.subscribe(ChannelKey.order(ORDER), order_sink)
    broadcaster.subscribe(ChannelKey.owner("owner-1"), owner)
    broadcaster.subscribe(ChannelKey.owner("owner-2"), other_owner)
    broadcaster.subscribe(ChannelKey.admin(), admin)

    order = Order(order_id=ORDER, code="123456", status=OrderStatus.CONFIRMED)
    delivered = broadcaster.notify(ORDER, Event.order_status(order), owner_id="owner-1")

    assert delivered == 3
    for sink in (order_sink, owner, admin):
        [event] = sink.drain()
        assert event.type is EventType.ORDER_STATUS
        assert event.payload["orderId"] == "123456"
        assert event.payload["orderStatus"] == "confirmed"
    assert other_owner.drain() == []


def test_unsubscribe_is_idempotent(broadcaster):
    sink = QueueSink()
    subscription = broadcaster.subscribe(ChannelKey.order(ORDER), sink)
    assert broadcaster.unsubscribe(subscription)
    assert not broadcaster.unsubscribe(subscription)
    assert broadcaster.channel_count() == 0

    broadcaster.publish(ORDER, make_sample(ORDER, 13.0, 80.0))
    assert sink.drain() == []


def test_close_closes_every_sink(broadcaster):
    sinks = [QueueSink() for _ in range(3)]
    broadcaster.subscribe(ChannelKey.order(ORDER), sinks[0])
    broadcaster.subscribe(ChannelKey.owner("o"), sinks[1])
    broadcaster.subscribe(ChannelKey.admin(), sinks[2])

    broadcaster.close()
    assert all(s.closed for s in sinks)
    assert broadcaster.subscriber_count() == 0


def test_queue_sink_drops_oldest_when_full():
    sink = QueueSink(maxsize=2)
    for i in range(3):
        sink.send(Event.location(make_sample(ORDER, float(i), 80.0)))
    assert lats(sink.drain()) == [1.0, 2.0]
    assert sink.dropped == 1


def test_queue_sink_close():
    sink = QueueSink()
    sink.close()
    assert sink.closed
    assert sink.get(timeout=0.01) is None
    assert list(sink) == []
    with pytest.raises(SinkClosed):
        sink.send(Event.location(make_sample(ORDER, 13.0, 80.0)))


def test_sse_frame():
    frame = Event.location(make_sample(ORDER, 13.0, 80.0)).to_sse()
    assert frame.startswith('data: {"type": "location", "payload": {"orderId": "' + ORDER)
    assert frame.endswith("\n\n")


def test_concurrent_publishers_keep_per_order_order():
    broadcaster = Broadcaster(shards=4)
    orders = [f"{i:032x}" for i in range(6)]
    sinks = {}
    for order_id in orders:
        sinks[order_id] = QueueSink(maxsize=1000)
        broadcaster.subscribe(ChannelKey.order(order_id), sinks[order_id])

    def publisher(order_id):
        for i in range(100):
            broadcaster.publish(order_id, make_sample(order_id, i / 10, 80.0))

    threads = [threading.Thread(target=publisher, args=(o,)) for o in orders]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for order_id in orders:
        received = lats(sinks[order_id].drain())
        assert received == [i / 10 for i in range(100)]
        assert broadcaster.latest(order_id).lat == 9.9


def test_attach_detach_cycles_do_not_grow_bookkeeping(broadcaster):
    channel = ChannelKey.order(ORDER)
    for _ in range(100):
        subscription = broadcaster.subscribe(channel, QueueSink())
        broadcaster.unsubscribe(subscription)
    assert broadcaster.subscriber_count() == 0
    assert broadcaster.channel_count() == 0


def test_forget_drops_latest_only(broadcaster):
    sink = QueueSink()
    broadcaster.subscribe(ChannelKey.order(ORDER), sink)
    broadcaster.publish(ORDER, make_sample(ORDER, 13.0, 80.0))

    assert broadcaster.forget(ORDER)
    assert not broadcaster.forget(ORDER)
    assert broadcaster.latest(ORDER) is None
    assert broadcaster.subscriber_count(ChannelKey.order(ORDER)) == 1


def test_async_sink_receives_events_from_other_threads(broadcaster):
    async def run():
        sink = AsyncQueueSink()
        broadcaster.subscribe(ChannelKey.order(ORDER), sink)
        publishers = [
            threading.Thread(target=broadcaster.publish, args=(ORDER, make_sample(ORDER, 13.0 + i / 100, 80.0)))
            for i in range(3)
        ]
        for t in publishers:
            t.start()
            t.join()
        received = [await sink.get(1) for _ in range(3)]
        sink.close()
        return received, await sink.get(1), sink

    received, after_close, sink = asyncio.run(run())
    assert [e.payload["lat"] for e in received] == pytest.approx([13.0, 13.01, 13.02])
    assert after_close is None
    assert sink.closed
    with pytest.raises(SinkClosed):
        sink.send(received[0])


def test_async_sink_drops_oldest_when_full():
    events = [Event.location(make_sample(ORDER, 13.0, 80.0 + i / 100)) for i in range(4)]

    async def run():
        sink = AsyncQueueSink(maxsize=2)
        for event in events:
            sink.send(event)
        await asyncio.sleep(0)
        return [await sink.get(0.1), await sink.get(0.1), await sink.get(0.01)], sink.dropped

    received, dropped = asyncio.run(run())
    assert received == [events[2], events[3], None]
    assert dropped == 2


def test_recent_events_sink_is_shared_by_readers(broadcaster):
    feed = RecentEventsSink(size=2)
    broadcaster.subscribe(ChannelKey.admin(), feed)
    orders = [Order(order_id=str(i) * 32, code=f"10000{i}") for i in range(3)]
    for order in orders:
        broadcaster.notify(order.order_id, Event.order_created(order))

    codes = [e.payload["orderId"] for e in feed.recent()]
    assert codes == ["100002", "100001"]
    assert [e.payload["orderId"] for e in feed.recent()] == codes
    assert broadcaster.subscriber_count(ChannelKey.admin()) == 1
