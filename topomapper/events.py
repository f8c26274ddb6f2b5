"""Per-network publish/subscribe fan-out of crawl progress events.

Usage::

    bus = EventBus()
    subscription = bus.subscribe(network_id)
    for event in subscription:   # blocks; ends when unsubscribed or dropped
        print(event.type)

Subscribers only see events published after they subscribed. A subscriber
whose queue is full is dropped rather than allowed to slow the crawl down.
"""

from __future__ import annotations

import queue
import threading
from typing import Iterator, Optional

from loguru import logger

from topomapper.models import (
    ChannelInfo,
    ChannelsEvent,
    Event,
    LogEvent,
    LogLevel,
    ScanStatus,
    StatusEvent,
    TopologyEvent,
    TopologyResponse,
)

DEFAULT_QUEUE_SIZE = 1000
POLL_INTERVAL = 0.5


class Subscription:
    """Bounded event queue for one observer of one network."""

    def __init__(self, network_id: str, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.network_id = network_id
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, event: Event) -> bool:
        """Enqueue without blocking. False if closed or full."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None when nothing arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._closed.set()

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get(timeout=POLL_INTERVAL)
            if event is not None:
                yield event
            elif self.closed:
                return


class EventBus:
    """Topics keyed by network id; a topic exists while it has subscribers."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._topics: dict[str, list[Subscription]] = {}

    def subscribe(self, network_id: str) -> Subscription:
        subscription = Subscription(network_id, maxsize=self.queue_size)
        with self._lock:
            subscribers = self._topics.setdefault(network_id, [])
            subscribers.append(subscription)
            count = len(subscribers)
        logger.debug(f"Subscriber added to network {network_id} ({count} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            subscribers = self._topics.get(subscription.network_id)
            if subscribers is None:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            remaining = len(subscribers)
            if not subscribers:
                del self._topics[subscription.network_id]
        logger.debug(f"Subscriber removed from network {subscription.network_id} ({remaining} remaining)")

    def subscriber_count(self, network_id: str) -> int:
        with self._lock:
            return len(self._topics.get(network_id, []))

    def has_topic(self, network_id: str) -> bool:
        with self._lock:
            return network_id in self._topics

    def publish(self, network_id: str, event: Event) -> int:
        """Deliver ``event`` to every current subscriber. Returns the delivery count."""
        with self._lock:
            subscribers = list(self._topics.get(network_id, []))
        delivered = 0
        for subscription in subscribers:
            if subscription.offer(event):
                delivered += 1
            else:
                logger.debug(f"Dropping slow or closed subscriber of network {network_id}")
                self.unsubscribe(subscription)
        return delivered

    # ── convenience publishers ────────────────────────────────────────

    def publish_log(self, network_id: str, level: LogLevel, message: str) -> int:
        return self.publish(network_id, LogEvent(level=level, message=message))

    def publish_topology(self, network_id: str, topology: TopologyResponse) -> int:
        return self.publish(network_id, TopologyEvent(topology=topology))

    def publish_status(self, network_id: str, status: ScanStatus, error: Optional[str] = None) -> int:
        return self.publish(network_id, StatusEvent(status=status, error=error))

    def publish_channels(self, network_id: str, channels: list[ChannelInfo]) -> int:
        return self.publish(network_id, ChannelsEvent(channels=channels))
