"""Best-effort fan-out of bridge events to live subscribers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable

from ..protocol.structures import BroadcastEvent

logger = logging.getLogger("ultrabridge.broadcast")

EventSink = Callable[[BroadcastEvent], None]


class Subscriber:
    """A registered output for broadcast events.

    With a ``sink`` every event is pushed synchronously to it. Without one
    events are buffered in a bounded queue drained through ``get``; ``None``
    marks end of stream.
    """

    def __init__(self, subscriber_id: int, queue_limit: int, sink: EventSink | None = None) -> None:
        self.id = subscriber_id
        self.alive = True
        self.sink = sink
        self.dropped = 0
        self._queue: asyncio.Queue[BroadcastEvent | None] = asyncio.Queue(maxsize=max(1, queue_limit))

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id}, alive={self.alive})"

    def deliver(self, event: BroadcastEvent) -> None:
        if self.sink is not None:
            self.sink(event)
            return
        self._queue.put_nowait(event)

    async def get(self) -> BroadcastEvent | None:
        if not self.alive and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if not self.alive:
            return
        self.alive = False
        if self.sink is not None:
            return
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


class BroadcastHub:
    """Owns the subscriber set; delivery is synchronous and in registration order."""

    def __init__(self, queue_limit: int) -> None:
        self._queue_limit = queue_limit
        self._subscribers: dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self.events_broadcast = 0
        self.delivery_failures = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, sink: EventSink | None = None) -> Subscriber:
        subscriber = Subscriber(next(self._ids), self._queue_limit, sink)
        self._subscribers[subscriber.id] = subscriber
        logger.debug("Subscriber %d registered (%d live).", subscriber.id, len(self._subscribers))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        """Remove ``subscriber``. Unknown or already removed handles are ignored."""
        registered = self._subscribers.pop(subscriber.id, None)
        if registered is None:
            return
        registered.close()
        logger.debug("Subscriber %d removed (%d live).", registered.id, len(self._subscribers))

    def broadcast(self, event: BroadcastEvent) -> int:
        """Deliver ``event`` to every live subscriber; returns deliveries made."""
        self.events_broadcast += 1
        delivered = 0
        for subscriber in tuple(self._subscribers.values()):
            try:
                subscriber.deliver(event)
            except asyncio.QueueFull:
                subscriber.dropped += 1
                self.delivery_failures += 1
                logger.warning(
                    "Subscriber %d queue full; dropping %s event.", subscriber.id, event.kind
                )
            except Exception:
                subscriber.dropped += 1
                self.delivery_failures += 1
                logger.exception("Delivery of %s event to subscriber %d failed", event.kind, subscriber.id)
            else:
                delivered += 1
        return delivered

    def close(self) -> None:
        for subscriber in tuple(self._subscribers.values()):
            self.unsubscribe(subscriber)


__all__ = ["BroadcastHub", "EventSink", "Subscriber"]
