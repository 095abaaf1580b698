"""
Fanout of snapshots to registered subscriber callbacks
"""
import logging
import threading
from typing import Any, Callable, Dict, Optional

from .utils import generate_subscription_id

logger = logging.getLogger("activeset")

Callback = Callable[[Any], None]


class SubscriberLimitError(RuntimeError):
    """Raised when a subscription would exceed the broadcaster's ceiling"""


class Broadcaster:
    """
    Registry of subscription ID -> callback

    publish() calls every callback synchronously on the publisher's path,
    so callbacks must only hand the snapshot off (enqueue) and return.
    A callback that raises is logged and skipped; the others still run.
    """

    def __init__(self, max_subscribers: Optional[int] = 100):
        self.max_subscribers = max_subscribers
        self._subscribers: Dict[str, Callback] = {}
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        """
        Register ``callback`` for future snapshots

        Returns an unsubscribe handle; calling it more than once is a no-op.
        Raises SubscriberLimitError when max_subscribers is reached.
        """
        with self._lock:
            if self.max_subscribers and len(self._subscribers) >= self.max_subscribers:
                logger.warning("🚫 Subscriber limit reached (%d)", self.max_subscribers)
                raise SubscriberLimitError(
                    f"subscriber limit of {self.max_subscribers} reached"
                )
            sub_id = generate_subscription_id(self._subscribers)
            self._subscribers[sub_id] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(sub_id, None)

        return unsubscribe

    def publish(self, snapshot: Any) -> int:
        """Deliver ``snapshot`` to every subscriber, returning the number of successful deliveries"""
        with self._lock:
            callbacks = list(self._subscribers.items())

        delivered = 0
        for sub_id, callback in callbacks:
            try:
                callback(snapshot)
                delivered += 1
            except Exception:
                logger.exception("Subscriber %s failed to take snapshot", sub_id)
        return delivered
