"""Fan-out of session events to any number of independent subscribers.

The relay publishes from its own task and must never wait on a slow
viewer, so every subscriber gets a bounded queue and an overflowing
queue loses events instead of applying backpressure.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from ronboard.adapters.events import SessionEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Group-addressed publish/subscribe over asyncio queues."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        # queue -> session id it follows, or None for lifecycle-only
        self._subscribers: dict[asyncio.Queue[SessionEvent], str | None] = {}
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, group: str | None = None) -> asyncio.Queue[SessionEvent]:
        """Register a subscriber.

        With *group* set the queue receives that session's output events
        in addition to every broadcast lifecycle event.
        """
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers[queue] = group
        logger.debug(
            "Subscriber added (group=%s, total=%d)", group, len(self._subscribers),
        )
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        self._subscribers.pop(queue, None)

    def publish(self, event: SessionEvent) -> int:
        """Deliver *event* without blocking. Returns how many queues got it."""
        if self._closed:
            return 0
        delivered = 0
        for queue, group in list(self._subscribers.items()):
            if event.group_scoped and group != event.session_id:
                continue
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full, dropping %s for session %s",
                    event.event_type, event.session_id,
                )
        return delivered

    def close(self) -> None:
        self._closed = True
        self._subscribers.clear()


class Notifier:
    """Publish-only callback channel.

    Observers connect at wiring time. A failing observer is logged and
    does not affect the publisher or the other observers.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._observers: list[Callable[..., Any]] = []

    def connect(self, observer: Callable[..., Any]) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def disconnect(self, observer: Callable[..., Any]) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def fire(self, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                observer(*args)
            except Exception:
                logger.warning("%s observer failed", self.name, exc_info=True)
