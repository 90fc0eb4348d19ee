"""
Ingest Event Bus - debounced "usage arrived" signals.

The ingest pipeline calls `emit(user_id)` once per stored usage batch. Signals
are debounced per user (one pending timer per user; a new signal restarts the
window) and then broadcast to every subscription whose filter matches.

Subscriptions are async iterators backed by their own queue, so each reader
consumes independently. `shutdown()` cancels pending timers and closes every
subscription, which ends the readers' `async for` loops.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

logger = structlog.get_logger()

DEFAULT_DEBOUNCE_SECONDS = 1.0

_CLOSE = object()


class IngestSubscription:
    """One reader of the bus, optionally filtered to a single user."""

    def __init__(self, bus: "IngestEventBus", user_id: Optional[str] = None) -> None:
        self._bus = bus
        self.user_id = user_id
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self.closed = False

    def matches(self, user_id: str) -> bool:
        return self.user_id is None or self.user_id == user_id

    def _deliver(self, user_id: str) -> None:
        if not self.closed:
            self._queue.put_nowait(user_id)

    def close(self) -> None:
        """Stop receiving events; pending reads finish after draining the queue."""
        if self.closed:
            return
        self.closed = True
        self._bus._detach(self)
        self._queue.put_nowait(_CLOSE)

    def __aiter__(self) -> "IngestSubscription":
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return str(item)


class IngestEventBus:
    """
    In-process publish/subscribe channel with a per-user debounce stage.

    Must be used from the event loop thread: timers are scheduled with
    `loop.call_later` and subscription queues are plain asyncio queues.
    """

    def __init__(self, debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS) -> None:
        self.debounce_seconds = debounce_seconds
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._subscriptions: list[IngestSubscription] = []
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._timers)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def emit(self, user_id: str) -> None:
        """Schedule a debounced publish for user_id, restarting any pending timer."""
        if self._closed:
            logger.debug("ingest_emit_after_shutdown_ignored", user_id=user_id)
            return

        loop = asyncio.get_running_loop()
        pending = self._timers.pop(user_id, None)
        if pending is not None:
            pending.cancel()
        self._timers[user_id] = loop.call_later(
            self.debounce_seconds, self._fire, user_id
        )

    def publish(self, user_id: str) -> int:
        """Deliver user_id to every matching subscription immediately."""
        if self._closed:
            return 0
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(user_id):
                subscription._deliver(user_id)
                delivered += 1
        logger.debug("ingest_event_published", user_id=user_id, subscribers=delivered)
        return delivered

    def for_user(self, user_id: str) -> IngestSubscription:
        """Subscribe to events fired for a single user."""
        return self._attach(IngestSubscription(self, user_id=user_id))

    def all(self) -> IngestSubscription:
        """Subscribe to every fired event regardless of user."""
        return self._attach(IngestSubscription(self))

    def shutdown(self) -> None:
        """Cancel all pending timers and close every subscription."""
        if self._closed:
            return
        self._closed = True
        cancelled = len(self._timers)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for subscription in list(self._subscriptions):
            subscription.close()
        logger.info("ingest_bus_shutdown", cancelled_timers=cancelled)

    def _fire(self, user_id: str) -> None:
        self._timers.pop(user_id, None)
        self.publish(user_id)

    def _attach(self, subscription: IngestSubscription) -> IngestSubscription:
        if self._closed:
            subscription.close()
            return subscription
        self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: IngestSubscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
