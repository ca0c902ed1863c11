"""In-process multiplexer for datastore change events.

Every realtime consumer subscribes here with a set of equality filters.
Datastores publish each row change once and the feed fans it out to the
matching subscriptions, so a subscriber with overlapping filters still gets
one copy per event.
"""

import asyncio
import logging
from collections import defaultdict

from chat_models import ChangeEvent, Collection

logger = logging.getLogger(__name__)

# (collection, field, value)
FeedFilter = tuple[Collection, str, str]

_CLOSED = object()


class FeedClosed(Exception):
    """The change feed dropped or the subscription was closed."""


class Subscription:
    """A consumer's view of the change feed."""

    def __init__(self, feed: "ChangeFeed", filters: list[FeedFilter], maxsize: int = 0):
        self.feed = feed
        self.filters = list(filters)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def wants(self, event: ChangeEvent) -> bool:
        return any(
            collection == event.collection and event.matches(field, value)
            for collection, field, value in self.filters
        )

    async def get(self) -> ChangeEvent:
        """Wait for the next event.

        Raises:
            FeedClosed: If the feed dropped or the subscription was closed

        """
        if self.closed and self.queue.empty():
            raise FeedClosed("Subscription closed")
        item = await self.queue.get()
        if item is _CLOSED:
            self.closed = True
            raise FeedClosed("Change feed disconnected")
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self.get()

    def _deliver(self, item) -> None:
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning(f"Subscription queue full ({self.filters}), dropping event")

    async def close(self):
        await self.feed.unsubscribe(self)
        if not self.closed:
            self.closed = True
            self._deliver(_CLOSED)


class ChangeFeed:
    """Fan-out of change events keyed by (collection, field, value)."""

    def __init__(self):
        # filter -> subscriptions registered for it
        self._subscriptions: dict[FeedFilter, list[Subscription]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self.connected = True

    async def subscribe(self, filters: list[FeedFilter]) -> Subscription:
        """Register a subscription for the given filters."""
        if not self.connected:
            raise FeedClosed("Change feed is disconnected")
        subscription = Subscription(self, filters)
        async with self._lock:
            for key in subscription.filters:
                self._subscriptions[key].append(subscription)
        logger.info(f"Subscribed to change feed with {len(filters)} filters")
        return subscription

    async def unsubscribe(self, subscription: Subscription):
        async with self._lock:
            for key in subscription.filters:
                if key in self._subscriptions:
                    try:
                        self._subscriptions[key].remove(subscription)
                        if not self._subscriptions[key]:
                            del self._subscriptions[key]
                    except ValueError:
                        pass

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching subscription once.

        Returns the number of subscriptions that received it.
        """
        async with self._lock:
            targets: list[Subscription] = []
            for (collection, field, value), subscriptions in self._subscriptions.items():
                if collection != event.collection or not event.matches(field, value):
                    continue
                for subscription in subscriptions:
                    if subscription not in targets:
                        targets.append(subscription)
            for subscription in targets:
                subscription._deliver(event)
        return len(targets)

    async def disconnect(self, reason: str = "disconnected"):
        """Drop all subscriptions; consumers see FeedClosed."""
        async with self._lock:
            self.connected = False
            dropped: list[Subscription] = []
            for subscriptions in self._subscriptions.values():
                for subscription in subscriptions:
                    if subscription not in dropped:
                        dropped.append(subscription)
            self._subscriptions.clear()
        for subscription in dropped:
            subscription._deliver(_CLOSED)
        logger.warning(f"Change feed {reason}, dropped {len(dropped)} subscriptions")

    def reconnect(self):
        self.connected = True

    @property
    def subscription_count(self) -> int:
        seen: list[Subscription] = []
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                if subscription not in seen:
                    seen.append(subscription)
        return len(seen)
