# File: src/parkbook/infrastructure/messaging.py
"""
Booking notifications

Committed booking changes are announced as BookingEvents on an in-process
EventBus. NotificationEventHandler relays them to a MessageQueue topic per
location (`location:<location_id>`), which attendant dashboards listen on.

Delivery is fire-and-forget: a failing handler, listener or broker is
logged and never reaches the booking operation that raised the event.

Queues:
- RedisMessageQueue - Redis Pub/Sub
- InMemoryMessageQueue - keeps every published event (tests, single process)
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4
import json
import logging
import threading

import redis


class EventType(str, Enum):
    BOOKING_CREATED = "booking-created"
    BOOKING_STATUS_UPDATED = "booking-status-updated"
    BOOKING_DELETED = "booking-deleted"


def location_topic(location_id: str) -> str:
    return f"location:{location_id}"


@dataclass(frozen=True)
class BookingEvent:
    """A booking change, carrying the booking as serialised after the change"""
    event_type: EventType
    location_id: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)
    source: str = "parkbook"
    event_id: str = field(default_factory=lambda: uuid4().hex)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return json.dumps({
            "event": self.event_type.value,
            "event_id": self.event_id,
            "location_id": self.location_id,
            "source": self.source,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }, default=str)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> 'BookingEvent':
        body = json.loads(raw)
        return cls(
            event_type=EventType(body["event"]),
            location_id=body.get("location_id"),
            data=body.get("data") or {},
            source=body.get("source", "parkbook"),
            event_id=body["event_id"],
            occurred_at=datetime.fromisoformat(body["occurred_at"])
        )


Listener = Callable[[BookingEvent], None]


# ============================================================================
# EVENT BUS
# ============================================================================

class EventHandler(ABC):

    @abstractmethod
    def handle(self, event: BookingEvent) -> None:
        pass

    def interested_in(self, event: BookingEvent) -> bool:
        return True


class EventBus:
    """
    Synchronous dispatch to subscribed handlers

    Services publish after their unit of work has committed, so handlers only
    ever see persisted changes.
    """

    def __init__(self):
        self._handlers: List[Tuple[EventHandler, FrozenSet[EventType]]] = []
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, handler: EventHandler, *event_types: EventType) -> None:
        """Register a handler for the given event types, or for all of them"""
        types = frozenset(EventType(t) for t in event_types) or frozenset(EventType)
        with self._lock:
            self._handlers = [(h, t) for h, t in self._handlers if h is not handler]
            self._handlers.append((handler, types))

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            remaining = [(h, t) for h, t in self._handlers if h is not handler]
            removed = len(remaining) != len(self._handlers)
            self._handlers = remaining
        return removed

    def publish(self, event: BookingEvent) -> int:
        """Returns how many handlers processed the event"""
        with self._lock:
            targets = [h for h, types in self._handlers if event.event_type in types]

        processed = 0
        for handler in targets:
            if not handler.interested_in(event):
                continue
            try:
                handler.handle(event)
                processed += 1
            except Exception:
                self.logger.exception(
                    f"{handler.__class__.__name__} failed on {event.event_type.value} ({event.event_id})"
                )
        self.logger.debug(f"{event.event_type.value} {event.event_id} processed by {processed} handler(s)")
        return processed


# ============================================================================
# MESSAGE QUEUES
# ============================================================================

class MessageQueue(ABC):

    @abstractmethod
    def publish(self, topic: str, event: BookingEvent) -> bool:
        """True when the event reached at least one listener"""
        pass

    @abstractmethod
    def subscribe(self, topic: str, listener: Listener) -> str:
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass

    def close(self) -> None:
        pass


def _notify(listeners: List[Listener], event: BookingEvent, topic: str, logger: logging.Logger) -> None:
    for listener in listeners:
        try:
            listener(event)
        except Exception:
            logger.exception(f"Listener on {topic} failed for {event.event_id}")


class InMemoryMessageQueue(MessageQueue):
    """Records every event per topic and calls local listeners synchronously"""

    def __init__(self):
        self._published: Dict[str, List[BookingEvent]] = {}
        self._listeners: Dict[str, Dict[str, Listener]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, event: BookingEvent) -> bool:
        with self._lock:
            self._published.setdefault(topic, []).append(event)
            listeners = list(self._listeners.get(topic, {}).values())
        _notify(listeners, event, topic, self.logger)
        return True

    def subscribe(self, topic: str, listener: Listener) -> str:
        subscription_id = uuid4().hex
        with self._lock:
            self._listeners.setdefault(topic, {})[subscription_id] = listener
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            for listeners in self._listeners.values():
                if listeners.pop(subscription_id, None) is not None:
                    return True
        return False

    def get_messages(self, topic: str) -> List[BookingEvent]:
        with self._lock:
            return list(self._published.get(topic, []))

    def clear(self) -> None:
        with self._lock:
            self._published.clear()
            self._listeners.clear()


class RedisMessageQueue(MessageQueue):
    """
    Redis Pub/Sub transport

    Subscriptions share one PubSub connection whose messages are read by
    redis-py's worker thread (run_in_thread) and fanned out to the listeners
    of the channel.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 client: Optional[redis.Redis] = None, poll_interval: float = 0.5):
        self.client = client if client is not None else redis.Redis.from_url(redis_url)
        self.poll_interval = poll_interval
        self._pubsub = None
        self._worker = None
        self._listeners: Dict[str, Dict[str, Listener]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, event: BookingEvent) -> bool:
        try:
            receivers = self.client.publish(topic, event.to_json())
        except redis.RedisError as e:
            self.logger.error(f"Could not publish {event.event_id} to {topic}: {e}")
            return False
        return receivers > 0

    def subscribe(self, topic: str, listener: Listener) -> str:
        subscription_id = uuid4().hex
        with self._lock:
            new_channel = topic not in self._listeners
            self._listeners.setdefault(topic, {})[subscription_id] = listener
            if self._pubsub is None:
                self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            if new_channel:
                self._pubsub.subscribe(**{topic: self._dispatch})
            if self._worker is None:
                self._worker = self._pubsub.run_in_thread(sleep_time=self.poll_interval, daemon=True)
                self.logger.info("Redis listener started")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            for topic, listeners in self._listeners.items():
                if subscription_id not in listeners:
                    continue
                del listeners[subscription_id]
                if not listeners:
                    del self._listeners[topic]
                    self._pubsub.unsubscribe(topic)
                return True
        return False

    def _dispatch(self, message: Dict[str, Any]) -> None:
        channel = message['channel']
        if isinstance(channel, bytes):
            channel = channel.decode('utf-8')
        try:
            event = BookingEvent.from_json(message['data'])
        except (ValueError, KeyError, TypeError) as e:
            self.logger.error(f"Dropping undecodable message on {channel}: {e}")
            return

        with self._lock:
            listeners = list(self._listeners.get(channel, {}).values())
        _notify(listeners, event, channel, self.logger)

    def close(self) -> None:
        if self._worker is not None:
            self._worker.stop()
            self._worker.join(timeout=5.0)
            self._worker = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        self.client.close()
        self.logger.info("Redis message queue closed")


# ============================================================================
# NOTIFICATION RELAY
# ============================================================================

class NotificationEventHandler(EventHandler):
    """Relays booking events to the topic of the booking's location"""

    def __init__(self, queue: MessageQueue):
        self.queue = queue
        self.logger = logging.getLogger(self.__class__.__name__)

    def interested_in(self, event: BookingEvent) -> bool:
        return bool(event.location_id)

    def handle(self, event: BookingEvent) -> None:
        topic = location_topic(event.location_id)
        if not self.queue.publish(topic, event):
            self.logger.warning(
                f"{event.event_type.value} for booking {event.data.get('id')} reached no listener on {topic}"
            )


class MessageBrokerFactory:

    @staticmethod
    def create_broker(redis_url: Optional[str] = None) -> MessageQueue:
        """Redis when a URL is configured, in-memory otherwise"""
        if redis_url:
            return RedisMessageQueue(redis_url)
        return InMemoryMessageQueue()
