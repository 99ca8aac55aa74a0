"""Per-session fan-out of adapter events to any number of subscribers."""

from __future__ import annotations

import asyncio
import itertools
from typing import AsyncIterator, Optional

from loguru import logger

from dispatchhub.core.models import SessionEvent

_subscription_ids = itertools.count(1)


class Subscription:
    """One subscriber's view of a session's live events.

    Only events published after the subscription was created are delivered.
    Iteration ends when the channel closes or the subscription is dropped.
    """

    def __init__(self, channel: "EventChannel") -> None:
        self.subscription_id = next(_subscription_ids)
        self.session_id = channel.session_id
        self._channel = channel
        self._queue: asyncio.Queue[Optional[SessionEvent]] = asyncio.Queue()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def _deliver(self, event: Optional[SessionEvent]) -> None:
        if self._active:
            self._queue.put_nowait(event)

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._channel._remove(self)
        self._queue.put_nowait(None)
        self._active = False

    def __aiter__(self) -> AsyncIterator[SessionEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class EventChannel:
    """Outbound event queue for one session, drained per subscriber."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._subscribers: dict[int, Subscription] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        if self._closed:
            # Already finished: hand back an iterator that ends immediately
            subscription._deliver(None)
            subscription._active = False
            return subscription
        self._subscribers[subscription.subscription_id] = subscription
        logger.trace(
            "Session {} subscriber {} added (total: {})",
            self.session_id[:8],
            subscription.subscription_id,
            len(self._subscribers),
        )
        return subscription

    def publish(self, event: SessionEvent) -> None:
        """Deliver to every current subscriber without blocking."""
        if self._closed:
            logger.debug("Dropping {} event for closed channel {}", event.type, self.session_id[:8])
            return
        for subscription in list(self._subscribers.values()):
            subscription._deliver(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscribers.values()):
            subscription._deliver(None)
            subscription._active = False
        self._subscribers.clear()

    def _remove(self, subscription: Subscription) -> None:
        self._subscribers.pop(subscription.subscription_id, None)
