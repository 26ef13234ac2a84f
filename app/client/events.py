"""
Event Client

Consumer-side wrapper around a bus connection, for screens that run in
the coordinating process (kitchen display, tools, tests).

The client remembers which topics it wants and re-subscribes on every
connect, because a connection starts with no memberships and loses them
all when it drops. Events missed while disconnected are gone; callers
re-fetch authoritative state through `on_reconnect` handlers.

Usage:
    client = EventClient(bus)
    client.subscribe(Topic.ORDERS)
    client.on("order_update", cache.apply)
    client.connect()
    await client.dispatch_pending()
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Optional

from app.services.events import BaseEventBus, Subscriber
from app.services.events.messages import BaseEvent, Topic

logger = logging.getLogger(__name__)

Handler = Callable[[BaseEvent], Any]


class EventClient:

    def __init__(self, bus: BaseEventBus):
        self.bus = bus
        self.subscriber: Optional[Subscriber] = None
        self.topics: set[Topic] = set()
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._reconnect_handlers: list[Callable[[], Any]] = []
        self.connect_count = 0

    @property
    def connected(self) -> bool:
        return self.subscriber is not None and not self.subscriber.closed

    def on(self, name: str, handler: Handler) -> None:
        """Register a handler for a channel (`order_update`) or an event type (`order_created`)."""
        self._handlers[name].append(handler)

    def off(self, name: str, handler: Handler) -> None:
        if handler in self._handlers.get(name, []):
            self._handlers[name].remove(handler)

    def on_reconnect(self, handler: Callable[[], Any]) -> None:
        """Called after every reconnect, to re-fetch authoritative state."""
        self._reconnect_handlers.append(handler)

    def subscribe(self, topic: Topic) -> None:
        self.topics.add(topic)
        if self.connected:
            self.bus.subscribe(self.subscriber, topic)

    def unsubscribe(self, topic: Topic) -> None:
        self.topics.discard(topic)
        if self.connected:
            self.bus.unsubscribe(self.subscriber, topic)

    def connect(self) -> None:
        if self.connected:
            return
        self.subscriber = self.bus.connect()
        for topic in self.topics:
            self.bus.subscribe(self.subscriber, topic)
        self.connect_count += 1
        logger.debug(f"Event client connected ({self.connect_count}), topics: {sorted(t.value for t in self.topics)}")

    async def reconnect(self) -> None:
        self.disconnect()
        self.connect()
        for handler in self._reconnect_handlers:
            await _call(handler)

    def disconnect(self) -> None:
        if self.subscriber is not None:
            self.bus.disconnect(self.subscriber)
            self.subscriber = None

    async def dispatch(self, event: BaseEvent) -> int:
        """Run every handler for the event's channel and type. Handler errors are logged."""
        handlers = list(self._handlers.get(event.channel, []))
        if event.type != event.channel:
            handlers += self._handlers.get(event.type, [])

        for handler in handlers:
            try:
                await _call(handler, event)
            except Exception:
                logger.exception(f"Handler for {event.type} failed")
        return len(handlers)

    async def dispatch_pending(self) -> int:
        """Dispatch everything already queued; returns the number of events."""
        if not self.connected:
            return 0
        events = self.subscriber.pending()
        for event in events:
            await self.dispatch(event)
        return len(events)

    async def run(self, idle_timeout: Optional[float] = None) -> None:
        """Dispatch events until disconnected (or idle for `idle_timeout` seconds)."""
        while self.connected:
            event = await self.subscriber.next_event(timeout=idle_timeout)
            if event is None:
                if idle_timeout is not None:
                    return
                continue
            await self.dispatch(event)


async def _call(handler: Callable, *args) -> Any:
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


__all__ = ["EventClient", "Handler"]
