"""In-memory push fanout of verified webhook events to connected UI sessions."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

import structlog

log = structlog.get_logger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class Subscriber:
    """A connected UI session."""

    subscriber_id: str
    send: SendCallable


class EventFanout:
    """Broadcast events to whoever is connected right now; nothing is queued or replayed."""

    def __init__(self, send_timeout: float = 2.0) -> None:
        self.send_timeout = send_timeout
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, subscriber: Subscriber) -> int:
        """Register a subscriber and return the number now connected."""

        async with self._lock:
            self._subscribers[subscriber.subscriber_id] = subscriber
            count = len(self._subscribers)
        log.info("push_subscriber_joined", subscriber_id=subscriber.subscriber_id, subscribers=count)
        return count

    async def unsubscribe(self, subscriber_id: str) -> None:
        async with self._lock:
            removed = self._subscribers.pop(subscriber_id, None)
        if removed:
            log.info("push_subscriber_left", subscriber_id=subscriber_id)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, message: dict) -> int:
        """
        Send *message* to every current subscriber, at most once each.

        Subscribers whose send fails or takes longer than ``send_timeout``
        are dropped. Returns the number of successful deliveries.
        """

        async with self._lock:
            subscribers = list(self._subscribers.values())

        if not subscribers:
            return 0

        results = await asyncio.gather(
            *(asyncio.wait_for(s.send(message), self.send_timeout) for s in subscribers),
            return_exceptions=True,
        )
        delivered = 0
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, Exception):
                log.warning(
                    "push_delivery_failed",
                    subscriber_id=subscriber.subscriber_id,
                    error=repr(result),
                )
                await self.unsubscribe(subscriber.subscriber_id)
            else:
                delivered += 1
        return delivered
