"""
Realtime change feed for purchase records.

Events are hints: a client that receives one should re-fetch the record from
the store rather than trust the payload. Each event carries the record's
store version, and an event older than one already published for the same
record is dropped, so a subscriber never sees a record move backwards.
"""

import logging
import threading
from collections import OrderedDict, deque
from typing import Callable, Optional, Protocol
from uuid import UUID, uuid4

from .models import TransitionEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[TransitionEvent], None]


class NotificationTransport(Protocol):
    def send(self, user_id: UUID, title: str, body: str, cta_ref: Optional[str] = None) -> None: ...


class LoggingTransport:
    def send(self, user_id: UUID, title: str, body: str, cta_ref: Optional[str] = None) -> None:
        logger.info("Notify %s: %s - %s (%s)", user_id, title, body, cta_ref)


class RealtimeNotifier:
    def __init__(self, buffer_size: int = 100, transport: Optional[NotificationTransport] = None,
                 max_tracked_records: int = 10000):
        self.buffer_size = buffer_size
        self.max_tracked_records = max_tracked_records
        self.transport = transport or LoggingTransport()
        self._lock = threading.RLock()
        self._position = 0
        self._last_version: OrderedDict[UUID, int] = OrderedDict()
        self._user_subscribers: dict[UUID, dict[str, Subscriber]] = {}
        self._operator_subscribers: dict[str, Subscriber] = {}
        self._buffers: dict[UUID, deque] = {}
        self._operator_buffer: deque = deque(maxlen=buffer_size)

    def subscribe_user(self, user_id: UUID, callback: Subscriber) -> str:
        token = f"user:{uuid4()}"
        with self._lock:
            self._user_subscribers.setdefault(user_id, {})[token] = callback
        return token

    def subscribe_operators(self, callback: Subscriber) -> str:
        token = f"operator:{uuid4()}"
        with self._lock:
            self._operator_subscribers[token] = callback
        return token

    def unsubscribe(self, token: str) -> None:
        with self._lock:
            self._operator_subscribers.pop(token, None)
            for subscribers in self._user_subscribers.values():
                subscribers.pop(token, None)

    def publish(self, event: TransitionEvent) -> Optional[TransitionEvent]:
        """Deliver an event to the record owner and every operator dashboard.

        Returns the event with its feed position, or None if a newer version
        of the same record was already published.
        """
        with self._lock:
            last = self._last_version.get(event.record_id, 0)
            if event.record_version <= last:
                logger.debug(
                    "Dropping stale event for %s (v%s <= v%s)",
                    event.record_id, event.record_version, last,
                )
                return None
            self._last_version[event.record_id] = event.record_version
            self._last_version.move_to_end(event.record_id)
            # Least recently published records are forgotten first.
            while len(self._last_version) > self.max_tracked_records:
                self._last_version.popitem(last=False)
            self._position += 1
            event = event.model_copy(update={"position": self._position})

            self._buffers.setdefault(event.user_id, deque(maxlen=self.buffer_size)).append(event)
            self._operator_buffer.append(event)

            # Delivery stays under the lock so callbacks see one record's
            # events in version order.
            callbacks = list(self._user_subscribers.get(event.user_id, {}).values())
            callbacks.extend(self._operator_subscribers.values())
            for callback in callbacks:
                try:
                    callback(event)
                except Exception:
                    logger.exception("Subscriber failed for event on %s", event.record_id)

        return event

    def notify(self, user_id: UUID, title: str, body: str, cta_ref: Optional[str] = None) -> bool:
        try:
            self.transport.send(user_id, title, body, cta_ref)
            return True
        except Exception:
            logger.warning("Notification to %s failed", user_id, exc_info=True)
            return False

    def events_for_user(self, user_id: UUID, after_position: int = 0) -> list[TransitionEvent]:
        with self._lock:
            return [e for e in self._buffers.get(user_id, ()) if e.position > after_position]

    def operator_events(self, after_position: int = 0) -> list[TransitionEvent]:
        with self._lock:
            return [e for e in self._operator_buffer if e.position > after_position]
