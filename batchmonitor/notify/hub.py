"""
In-process fan-out of execution events.

Delivery is best effort: an event reaches only the subscriptions that
exist when it is published (no replay), and a subscription whose queue
is full drops the event with a back-pressure warning.
"""

import logging
import queue
import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple


logger = logging.getLogger(__name__)


Event = Tuple[str, Dict[str, Any]]


class Subscription:
    """A listener's bounded inbox of ``(topic, payload)`` events."""

    def __init__(self, hub: "NotificationHub", topics: Optional[Iterable[str]], maxsize: int):
        self._hub = hub
        self.topics: Optional[Set[str]] = set(topics) if topics is not None else None
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def accepts(self, topic: str) -> bool:
        return self.topics is None or topic in self.topics

    def offer(self, event: Event) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None if nothing arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        """All events currently queued, without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._hub.unsubscribe(self)
        self.closed = True

    def __iter__(self) -> Iterator[Event]:
        return iter(self.drain())

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class NotificationHub:
    """Publishes status, progress and console events to subscribers."""

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, topics: Optional[Iterable[str]] = None) -> Subscription:
        """Register a listener for ``topics`` (all topics when None)."""
        subscription = Subscription(self, topics, self.maxsize)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """Deliver an event to current subscribers; returns how many received it."""
        logger.debug(f"Publishing to {topic}: {payload}")
        with self._lock:
            targets = [s for s in self._subscriptions if s.accepts(topic)]

        delivered = 0
        for subscription in targets:
            if subscription.offer((topic, dict(payload))):
                delivered += 1
            else:
                logger.warning(
                    f"Subscriber queue full, dropped event on {topic} "
                    f"({subscription.dropped} dropped so far)"
                )
        return delivered
