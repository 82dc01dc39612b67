# events.py — In-process publish/subscribe bus for board change notifications
"""
One EventBus is created per application (see main.lifespan) and handed to
every BoardService. Each subscriber owns a bounded asyncio.Queue, so a slow
GraphQL client can never block a mutation: publish() is synchronous and a
full queue simply drops the payload for that subscriber.

Usage:

    async with bus.subscribe(EventChannel.TICKET_MOVED,
                             predicate=lambda p: p["project_id"] == pid) as sub:
        async for payload in sub:
            ...
"""
import asyncio
import logging
import uuid
from enum import Enum as PyEnum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("agentboard.events")

DEFAULT_QUEUE_SIZE = 1000

Predicate = Callable[[dict], bool]


class EventChannel(str, PyEnum):
    TICKET_CREATED = "ticket_created"
    TICKET_UPDATED = "ticket_updated"
    TICKET_MOVED = "ticket_moved"
    TICKET_DELETED = "ticket_deleted"
    COMMENT_ADDED = "comment_added"
    ACTIVITY_ADDED = "activity_added"
    TICKET_VIEWED = "ticket_viewed"
    AGENT_CHANGED = "agent_changed"
    PROJECT_CHANGED = "project_changed"
    AUDIT_ADDED = "audit_added"


# Wakes a consumer parked on an empty queue when its subscription closes
_CLOSED = object()


class Subscription:
    """A single consumer's view of one channel. Async-iterable until closed."""

    def __init__(self, bus: "EventBus", channel: EventChannel,
                 predicate: Optional[Predicate] = None, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.id = str(uuid.uuid4())
        self.channel = channel
        self._bus = bus
        self._predicate = predicate
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, payload: dict) -> bool:
        """Queue a payload if it passes the filter. Never raises."""
        if self._closed:
            return False
        if self._predicate is not None:
            try:
                if not self._predicate(payload):
                    return False
            except Exception:
                logger.exception(f"Subscription filter failed on {self.channel.value} [sub={self.id[:8]}]")
                return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Dropping {self.channel.value} event, subscriber queue full [sub={self.id[:8]}]")
            return False
        return True

    async def get(self) -> dict:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._bus._unregister(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # consumer is not parked; it stops once the buffer drains
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        return await self.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        return False


class EventBus:
    """Fan-out of channel payloads to live subscriptions."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[EventChannel, Dict[str, Subscription]] = {}
        self._closed = False

    def subscribe(self, channel, predicate: Optional[Predicate] = None,
                  maxsize: Optional[int] = None) -> Subscription:
        if self._closed:
            raise RuntimeError("Event bus is closed")
        channel = EventChannel(channel)
        sub = Subscription(self, channel, predicate, maxsize or self.queue_size)
        self._subscribers.setdefault(channel, {})[sub.id] = sub
        logger.debug(f"Subscribed to {channel.value} [sub={sub.id[:8]}]")
        return sub

    def publish(self, channel, payload: Dict[str, Any]) -> int:
        """Deliver to every matching subscriber; returns the delivery count.

        Errors are logged, never raised: the mutation that triggered the
        event has already been committed.
        """
        try:
            channel = EventChannel(channel)
            delivered = 0
            for sub in list(self._subscribers.get(channel, {}).values()):
                if sub.offer(payload):
                    delivered += 1
            return delivered
        except Exception:
            logger.exception(f"Failed to publish event on {channel}")
            return 0

    def subscriber_count(self, channel=None) -> int:
        if channel is None:
            return sum(len(subs) for subs in self._subscribers.values())
        return len(self._subscribers.get(EventChannel(channel), {}))

    def _unregister(self, sub: Subscription):
        subs = self._subscribers.get(sub.channel)
        if subs is not None:
            subs.pop(sub.id, None)
            if not subs:
                del self._subscribers[sub.channel]

    def close(self):
        if self._closed:
            return
        self._closed = True
        for subs in list(self._subscribers.values()):
            for sub in list(subs.values()):
                sub.close()
        logger.info("Event bus closed")
