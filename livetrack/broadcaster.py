# livetrack/broadcaster.py
"""
Position Store & Broadcaster for the LiveTrack service.

Keeps exactly one latest PositionSample per order and fans out events to
live subscribers. Channels are keyed by:

- an order id (customer tracking page)
- an owner id (restaurant-owner dashboard)
- the admin channel (admin console)

Location ticks only reach the order's own channel. Lifecycle events
(order created, status changed) additionally reach the owner and admin
channels.

Delivery is best-effort and at-most-once: there is no replay, and a sink
that fails is dropped while the rest of the fan-out continues. Late joiners
receive the current latest sample as their first event.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterator, List, Optional, Protocol

from . import config
from .models import Event, PositionSample
from .utils import ShardedLock

logger = logging.getLogger(__name__)


class ChannelScope(Enum):
    ORDER = "order"
    OWNER = "owner"
    ADMIN = "admin"


@dataclass(frozen=True)
class ChannelKey:
    """Address of a live channel."""
    scope: ChannelScope
    key: str = ""

    @classmethod
    def order(cls, order_id: str) -> "ChannelKey":
        return cls(ChannelScope.ORDER, str(order_id))

    @classmethod
    def owner(cls, owner_id: str) -> "ChannelKey":
        return cls(ChannelScope.OWNER, str(owner_id))

    @classmethod
    def admin(cls) -> "ChannelKey":
        return ADMIN_CHANNEL

    def __str__(self) -> str:
        return self.scope.value if self.scope is ChannelScope.ADMIN else f"{self.scope.value}:{self.key}"


ADMIN_CHANNEL = ChannelKey(ChannelScope.ADMIN, "*")


class Sink(Protocol):
    """
    Transport-independent receiving end of a subscription.

    `send` must not block; raising from it gets the subscriber dropped.
    """

    def send(self, event: Event) -> None: ...

    def close(self) -> None: ...


class SinkClosed(Exception):
    """Raised when sending to a sink that has been closed."""


_CLOSED = object()


class QueueSink:
    """
    Bounded in-memory sink drained by one consumer (e.g. an HTTP stream).

    When the buffer is full the oldest event is discarded, so a slow reader
    misses intermediate samples but always sees the newest ones.
    """

    def __init__(self, maxsize: int = None) -> None:
        if maxsize is None:
            maxsize = config.SUBSCRIBER_QUEUE_SIZE
        self._queue: "queue.Queue" = queue.Queue(maxsize=max(1, maxsize))
        self._closed = threading.Event()
        self.dropped: int = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, event: Event) -> None:
        if self._closed.is_set():
            raise SinkClosed("sink is closed")
        self._put(event)

    def _put(self, item) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # Wake up a consumer blocked in get()
        self._put(_CLOSED)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Next event, or None on timeout or once the sink is closed.

        Check `closed` to tell the two apart.
        """
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def drain(self) -> List[Event]:
        """All buffered events, without blocking."""
        events: List[Event] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is not _CLOSED:
                events.append(item)

    def __iter__(self) -> Iterator[Event]:
        """Block for events until the sink is closed."""
        while True:
            event = self.get()
            if event is None:
                if self.closed:
                    return
                continue
            yield event


class AsyncQueueSink:
    """
    Bounded sink drained by a coroutine on one event loop (e.g. an SSE
    response). Must be created on that loop.

    Publishers call `send` from any thread; events are handed over with
    `call_soon_threadsafe`, so neither publishers nor the reader ever park a
    thread. Overflow discards the oldest event, as in QueueSink.
    """

    def __init__(self, maxsize: int = None, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if maxsize is None:
            maxsize = config.SUBSCRIBER_QUEUE_SIZE
        self._loop = loop or asyncio.get_running_loop()
        self._queue: "asyncio.Queue" = asyncio.Queue(maxsize=max(1, maxsize))
        self._closed = threading.Event()
        self._finished = False
        self.dropped: int = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, event: Event) -> None:
        if self._closed.is_set():
            raise SinkClosed("sink is closed")
        self._loop.call_soon_threadsafe(self._put, event)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._loop.call_soon_threadsafe(self._put, _CLOSED)
        except RuntimeError as e:
            logger.debug(f"Event loop gone before sink close: {e}")

    def _put(self, item) -> None:
        # Runs on the loop thread
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Next event, or None on timeout or once the sink is closed.

        Check `closed` to tell the two apart.
        """
        if self._finished:
            return None
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            self._finished = True
            return None
        return item


class RecentEventsSink:
    """
    Ring buffer of the newest events, read by any number of viewers.

    Suited to dashboards: one subscription serves every reader, and nothing
    is consumed by reading.
    """

    def __init__(self, size: int = 50) -> None:
        self._events: Deque[Event] = deque(maxlen=max(1, size))
        self._lock = threading.Lock()

    def send(self, event: Event) -> None:
        with self._lock:
            self._events.appendleft(event)

    def close(self) -> None:
        pass

    def recent(self) -> List[Event]:
        """Buffered events, newest first."""
        with self._lock:
            return list(self._events)


@dataclass(eq=False)
class Subscription:
    """Handle returned by subscribe(); pass it to unsubscribe()."""
    subscription_id: int
    channel: ChannelKey
    sink: Sink
    active: bool = True

    def __repr__(self) -> str:
        return f"Subscription({self.subscription_id}, {self.channel}, active={self.active})"


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    channels: Dict[ChannelKey, Dict[int, Subscription]] = field(default_factory=dict)
    latest: Dict[str, PositionSample] = field(default_factory=dict)


class Broadcaster:
    """
    Sharded latest-position store with pub/sub fan-out.

    An order's latest sample lives in the same shard as the order's channel,
    so publishing and late-joiner registration are atomic with respect to
    each other: a new subscriber sees the current sample exactly once and
    then every later one, in publication order.
    """

    def __init__(self, shards: int = None) -> None:
        self._sharding = ShardedLock(shards)
        self._shards: List[_Shard] = [_Shard() for _ in range(len(self._sharding))]
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def _shard(self, channel: ChannelKey) -> _Shard:
        return self._shards[self._sharding.index_for(channel)]

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, channel: ChannelKey, sink: Sink) -> Subscription:
        """
        Attach a sink to a channel.

        For order channels the current latest sample (if any) is sent
        immediately, before any live update.
        """
        with self._ids_lock:
            subscription = Subscription(next(self._ids), channel, sink)

        shard = self._shard(channel)
        with shard.lock:
            shard.channels.setdefault(channel, {})[subscription.subscription_id] = subscription
            if channel.scope is ChannelScope.ORDER:
                current = shard.latest.get(channel.key)
                if current is not None and not self._deliver(subscription, Event.location(current)):
                    self._drop(shard, subscription)

        logger.debug(f"{subscription} attached")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """
        Detach a subscription. Safe to call more than once.

        Returns:
            True if the subscription was still registered
        """
        shard = self._shard(subscription.channel)
        with shard.lock:
            removed = self._remove(shard, subscription)
        subscription.active = False
        if removed:
            logger.debug(f"{subscription} detached")
        return removed

    def subscriber_count(self, channel: Optional[ChannelKey] = None) -> int:
        """Live subscriptions on one channel, or across all channels."""
        if channel is not None:
            shard = self._shard(channel)
            with shard.lock:
                return len(shard.channels.get(channel, {}))
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += sum(len(subs) for subs in shard.channels.values())
        return total

    def channel_count(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.channels)
        return total

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, order_id: str, sample: PositionSample) -> int:
        """
        Store `sample` as the order's latest and push it to the order channel.

        Returns:
            Number of subscribers that received it
        """
        channel = ChannelKey.order(order_id)
        shard = self._shard(channel)
        with shard.lock:
            shard.latest[str(order_id)] = sample
            return self._fanout_locked(shard, channel, Event.location(sample))

    def notify(self, order_id: str, event: Event, owner_id: Optional[str] = None) -> int:
        """
        Push a lifecycle event to the order, owner and admin channels.

        Returns:
            Number of subscribers that received it
        """
        channels = [ChannelKey.order(order_id)]
        if owner_id:
            channels.append(ChannelKey.owner(owner_id))
        channels.append(ADMIN_CHANNEL)

        delivered = 0
        for channel in channels:
            shard = self._shard(channel)
            with shard.lock:
                delivered += self._fanout_locked(shard, channel, event)
        return delivered

    def latest(self, order_id: str) -> Optional[PositionSample]:
        """Current sample for late joiners, or None if nothing was published yet."""
        channel = ChannelKey.order(order_id)
        shard = self._shard(channel)
        with shard.lock:
            return shard.latest.get(str(order_id))

    def forget(self, order_id: str) -> bool:
        """
        Drop the order's latest sample. Subscriptions stay attached.

        Returns:
            True if a sample was stored
        """
        channel = ChannelKey.order(order_id)
        shard = self._shard(channel)
        with shard.lock:
            return shard.latest.pop(str(order_id), None) is not None

    def close(self) -> None:
        """Close every sink and forget all state."""
        for shard in self._shards:
            with shard.lock:
                subscriptions = [s for subs in shard.channels.values() for s in subs.values()]
                shard.channels.clear()
                shard.latest.clear()
            for subscription in subscriptions:
                subscription.active = False
                self._close_sink(subscription)

    # -------------------------------------------------------------------------
    # Internals (callers hold the shard lock)
    # -------------------------------------------------------------------------

    def _fanout_locked(self, shard: _Shard, channel: ChannelKey, event: Event) -> int:
        subscriptions = list(shard.channels.get(channel, {}).values())
        delivered = 0
        for subscription in subscriptions:
            if self._deliver(subscription, event):
                delivered += 1
            else:
                self._drop(shard, subscription)
        return delivered

    def _deliver(self, subscription: Subscription, event: Event) -> bool:
        try:
            subscription.sink.send(event)
            return True
        except Exception as e:
            logger.warning(f"Dropping {subscription}: push failed ({e!r})")
            return False

    def _remove(self, shard: _Shard, subscription: Subscription) -> bool:
        subs = shard.channels.get(subscription.channel)
        if not subs or subs.pop(subscription.subscription_id, None) is None:
            return False
        if not subs:
            del shard.channels[subscription.channel]
        return True

    def _drop(self, shard: _Shard, subscription: Subscription) -> None:
        self._remove(shard, subscription)
        subscription.active = False
        self._close_sink(subscription)

    def _close_sink(self, subscription: Subscription) -> None:
        try:
            subscription.sink.close()
        except Exception as e:
            logger.debug(f"Closing sink of {subscription} failed: {e!r}")
