"""
Event Bus Factory

Returns the process-wide bus used by the HTTP application. Tests and
tools create their own InMemoryEventBus instances instead of going
through the factory.

Usage:
    from app.services.events import get_event_bus, broadcast

    bus = get_event_bus()
    await bus.start()
    await broadcast(bus, TableBlockedEvent(table_id=3, table_label="A3"))

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from app.core.config import get_settings
from app.services.events.base import BaseEventBus, Subscriber
from app.services.events.memory import InMemoryEventBus
from app.services.events.messages import (
    BaseEvent,
    BroadcastEvent,
    Topic,
    parse_event,
)

logger = logging.getLogger(__name__)


@lru_cache()
def get_event_bus() -> BaseEventBus:
    """Get the application's event bus instance."""
    settings = get_settings()
    logger.info("Event Bus: Using InMemoryEventBus (single coordinating process)")
    return InMemoryEventBus(queue_size=settings.subscriber_queue_size)


def reset_event_bus() -> None:
    """Clear the cached bus instance."""
    get_event_bus.cache_clear()


async def broadcast(bus: BaseEventBus, event: BaseEvent) -> int:
    """
    Publish an event without letting a broadcast failure reach the caller.

    The durable write that produced the event is the source of truth;
    a failed notification is logged and never rolls it back.
    """
    try:
        return await bus.publish(event)
    except Exception:
        logger.exception(f"Broadcast of {event.type} failed; state change stands")
        return 0


__all__ = [
    "get_event_bus",
    "reset_event_bus",
    "broadcast",
    "BaseEventBus",
    "InMemoryEventBus",
    "Subscriber",
    "BaseEvent",
    "BroadcastEvent",
    "Topic",
    "parse_event",
]
