"""
In-process change feed used by the report and profile stores.

Stores publish a full snapshot per topic after every committed write.
Delivery is at-least-once: a listener may see the same snapshot twice
(for instance the initial snapshot racing a concurrent write) and must
treat every delivery as a full-state replacement.
"""
import itertools
import logging
import threading
from typing import Any, Callable, Dict

from .interfaces import Subscription

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class FeedSubscription(Subscription):
    def __init__(self, feed: "ChangeFeed", topic: str, key: int):
        self._feed = feed
        self._topic = topic
        self._key = key
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def topic(self) -> str:
        return self._topic

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._feed._remove(self._topic, self._key)


class ChangeFeed:
    """Topic -> listeners registry with snapshot push."""

    def __init__(self):
        self._listeners: Dict[str, Dict[int, Listener]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self, topic: str, listener: Listener) -> FeedSubscription:
        with self._lock:
            key = next(self._ids)
            self._listeners.setdefault(topic, {})[key] = listener
        logger.debug(f"Subscribed listener {key} to {topic}")
        return FeedSubscription(self, topic, key)

    def _remove(self, topic: str, key: int) -> None:
        with self._lock:
            listeners = self._listeners.get(topic)
            if listeners is None:
                return
            listeners.pop(key, None)
            if not listeners:
                del self._listeners[topic]
        logger.debug(f"Unsubscribed listener {key} from {topic}")

    def listener_count(self, topic: str) -> int:
        with self._lock:
            return len(self._listeners.get(topic, {}))

    def has_listeners(self, topic: str) -> bool:
        return self.listener_count(topic) > 0

    def deliver(self, listener: Listener, topic: str, snapshot: Any) -> bool:
        """Call one listener; a failing listener is logged, never propagated."""
        try:
            listener(snapshot)
            return True
        except Exception as e:
            logger.error(f"Listener on {topic} failed: {e}")
            return False

    def publish(self, topic: str, snapshot: Any) -> int:
        """Push snapshot to every listener of topic. Returns the number of successful deliveries."""
        with self._lock:
            listeners = list(self._listeners.get(topic, {}).values())
        delivered = 0
        for listener in listeners:
            if self.deliver(listener, topic, snapshot):
                delivered += 1
        return delivered
