import threading
from collections.abc import Callable

from eventchain.application.port import NotificationPublisher
from eventchain.domain.value_object import ChainLifecycleEvent


class InMemoryNotificationPublisher(NotificationPublisher):
    """Keeps every published event and forwards it to subscribers in the publishing thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[ChainLifecycleEvent], None]] = []
        self.events: list[ChainLifecycleEvent] = []

    def subscribe(self, callback: Callable[[ChainLifecycleEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: ChainLifecycleEvent) -> None:
        with self._lock:
            self.events.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(event)
