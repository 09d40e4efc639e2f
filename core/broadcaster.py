"""Fan-out of job lifecycle events to live subscribers.

Every subscriber owns a bounded asyncio.Queue. Publishing never awaits: an
event is pushed with put_nowait, and a subscriber whose queue is full or that
has been closed is dropped from the set instead of stalling the publisher or
the other subscribers.
"""

import asyncio
import json
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .logging_config import get_logger
from .metrics import record_event, record_subscriber_drop, update_subscriber_count

logger = get_logger(__name__)

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 256


class EventType(Enum):
    """Event kinds published by the job registry."""

    STARTED = "started"
    PROGRESS = "progress"
    RESULT = "result"
    FINDINGS = "findings"
    COMPLETE = "complete"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Event:
    type: EventType
    job_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "job_id": self.job_id,
            "timestamp": self.timestamp,
            **self.payload,
        }

    def to_json(self) -> str:
        """Serialize for whatever transport a subscriber sits behind."""
        return json.dumps(self.to_dict(), default=str)


class Subscription:
    """
    A subscriber's event channel.

    Consume with ``async for event in subscription`` or ``await get()``.
    Iteration ends once the subscription is closed and drained.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        """Number of events buffered and not yet consumed."""
        return self._queue.qsize()

    def deliver(self, event: Event) -> bool:
        """Buffer an event without blocking; False if closed or full."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a consumer blocked on an empty queue
        if self._queue.empty():
            self._queue.put_nowait(self._CLOSED)

    async def get(self, timeout: float | None = None) -> Event | None:
        """
        Next event, or None once closed and drained.

        Raises:
            TimeoutError: no event arrived within timeout
        """
        if self._closed and self._queue.empty():
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is self._CLOSED:
            return None
        return item

    def get_nowait(self) -> Event | None:
        """Next buffered event, or None if nothing is buffered."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is self._CLOSED:
            return None
        return item

    def drain(self) -> list[Event]:
        """Pop every buffered event."""
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBroadcaster:
    """Owns the subscriber set and delivers each published event to all of it."""

    def __init__(self, queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        subscription = Subscription(maxsize=maxsize or self.queue_size)
        with self._lock:
            self._subscribers.append(subscription)
            count = len(self._subscribers)
        update_subscriber_count(count)
        logger.info("subscriber_added", subscribers=count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove and close a subscription; False if it was not registered."""
        with self._lock:
            try:
                self._subscribers.remove(subscription)
            except ValueError:
                return False
            count = len(self._subscribers)
        subscription.close()
        update_subscriber_count(count)
        logger.info("subscriber_removed", subscribers=count)
        return True

    def publish(self, event: Event) -> int:
        """
        Deliver event to every registered subscriber.

        Returns:
            Number of subscribers that accepted the event
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        dropped: list[tuple[Subscription, str]] = []
        for subscription in subscribers:
            if subscription.deliver(event):
                delivered += 1
            else:
                dropped.append(
                    (subscription, "closed" if subscription.closed else "full")
                )

        if dropped:
            with self._lock:
                for subscription, _ in dropped:
                    if subscription in self._subscribers:
                        self._subscribers.remove(subscription)
                count = len(self._subscribers)
            for subscription, reason in dropped:
                subscription.close()
                record_subscriber_drop(reason)
                logger.warning(
                    "subscriber_dropped",
                    reason=reason,
                    event_type=event.type.value,
                    job_id=event.job_id,
                )
            update_subscriber_count(count)

        record_event(event.type.value)
        logger.debug(
            "event_published",
            event_type=event.type.value,
            job_id=event.job_id,
            delivered=delivered,
        )
        return delivered

    def close_all(self) -> None:
        """Close every subscription (server shutdown)."""
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscription in subscribers:
            subscription.close()
        update_subscriber_count(0)
