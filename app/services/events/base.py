"""
Event Bus Abstract Base Class

Defines the contract every broadcaster implementation follows. The bus
is an injectable object with an explicit lifecycle (start/shutdown), so
the application, the tests and a standalone kitchen display can each own
their own instance.

Delivery contract:
    - Connecting does not subscribe. A connection joins topics explicitly
      and loses all memberships when it disconnects.
    - Delivery is best effort, at most once per connection, with no replay
      log. A connection that is gone, or whose queue is full, misses the
      event and must re-fetch state.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from app.services.events.messages import BaseEvent, Topic


@dataclass(eq=False)
class Subscriber:
    """
    One live connection to the bus.

    Attributes:
        queue: Pending events, consumed by the connection's writer
        topics: Rooms this connection currently belongs to
        dropped: Events lost because the queue was full
    """
    queue: asyncio.Queue
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    topics: set[Topic] = field(default_factory=set)
    dropped: int = 0
    closed: bool = False

    async def next_event(self, timeout: Optional[float] = None) -> Optional[BaseEvent]:
        """Wait for the next event; None on timeout."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> list[BaseEvent]:
        """Drain everything already queued without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    async def events(self) -> AsyncIterator[BaseEvent]:
        while not self.closed:
            yield await self.queue.get()


class BaseEventBus(ABC):
    """Abstract base class for event buses."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the bus implementation name."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass

    @abstractmethod
    async def start(self) -> None:
        """Begin accepting connections and events."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Disconnect every subscriber and stop accepting events."""
        pass

    @abstractmethod
    def connect(self) -> Subscriber:
        """Open a connection with no topic memberships."""
        pass

    @abstractmethod
    def disconnect(self, subscriber: Subscriber) -> None:
        pass

    @abstractmethod
    def subscribe(self, subscriber: Subscriber, topic: Topic) -> None:
        pass

    @abstractmethod
    def unsubscribe(self, subscriber: Subscriber, topic: Topic) -> None:
        pass

    @abstractmethod
    async def publish(self, event: BaseEvent) -> int:
        """
        Fan an event out to every member of its topic.

        Returns:
            int: Number of connections the event was queued for

        Raises:
            TransientInfraError: The bus is not running
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass
