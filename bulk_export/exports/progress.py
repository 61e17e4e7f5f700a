"""
Progress notifications for running exports.

Exports publish through the ProgressPublisher interface that is handed to
them; nothing here is module global. ProgressBroadcaster fans events out to
any number of subscribers without ever blocking a publisher: each subscriber
has a bounded queue and events that do not fit are dropped for that
subscriber only.
"""

import asyncio
from typing import AsyncIterator, Optional, Protocol, Set

from bulk_export.exports.models import ProgressEvent
from bulk_export.utils.logger import get_logger

logger = get_logger(__name__)


class ProgressPublisher(Protocol):
    """Fire-and-forget sink for export progress events."""

    def publish(self, event: ProgressEvent) -> None:
        ...


class NullPublisher:
    """Publisher that discards everything."""

    def publish(self, event: ProgressEvent) -> None:
        return None


class Subscription:
    """
    One subscriber's view of the broadcast.

    Iterate it to receive events; leave the ``async with`` block (or call
    ``close``) to unsubscribe.
    """

    def __init__(self, broadcaster: "ProgressBroadcaster", filename: Optional[str], max_pending: int):
        self.filename = filename
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=max_pending)

    def matches(self, event: ProgressEvent) -> bool:
        return self.filename is None or self.filename == event.filename

    def offer(self, event: ProgressEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> ProgressEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            yield await self.get()


class ProgressBroadcaster:
    """
    Fan-out of progress events to live subscribers.

    Delivery is best effort and at most once; late subscribers get no replay.
    Must be used from the event loop that owns the subscriptions.
    """

    def __init__(self, max_pending: int = 100):
        self.max_pending = max_pending
        self._subscriptions: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, filename: Optional[str] = None) -> Subscription:
        """Register a subscriber, optionally only for one export filename."""
        subscription = Subscription(self, filename, self.max_pending)
        self._subscriptions.add(subscription)
        logger.debug("Progress subscriber added", filename=filename, subscribers=len(self._subscriptions))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)
        if subscription.dropped:
            logger.info(
                "Progress subscriber removed after dropping events",
                filename=subscription.filename,
                dropped=subscription.dropped,
            )

    def publish(self, event: ProgressEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.offer(event)
