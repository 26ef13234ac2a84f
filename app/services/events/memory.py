"""
In-Process Event Bus

Single coordinating process implementation: topic rooms are sets of
subscribers, each with a bounded asyncio queue. Publishing never awaits a
slow consumer; a full queue drops the event for that connection only.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging

from app.core.errors import TransientInfraError
from app.services.events.base import BaseEventBus, Subscriber
from app.services.events.messages import BaseEvent, Topic

logger = logging.getLogger(__name__)


class InMemoryEventBus(BaseEventBus):
    """Topic-scoped fan-out within one process."""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._rooms: dict[Topic, set[Subscriber]] = {topic: set() for topic in Topic}
        self._subscribers: dict[str, Subscriber] = {}
        self._running = False

    @property
    def provider_name(self) -> str:
        return "memory"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def connection_count(self) -> int:
        return len(self._subscribers)

    def members(self, topic: Topic) -> int:
        return len(self._rooms[topic])

    async def start(self) -> None:
        self._running = True
        logger.info(f"InMemoryEventBus started (queue_size={self.queue_size})")

    async def shutdown(self) -> None:
        for subscriber in list(self._subscribers.values()):
            self.disconnect(subscriber)
        self._running = False
        logger.info("InMemoryEventBus stopped")

    def connect(self) -> Subscriber:
        if not self._running:
            raise TransientInfraError("Event bus is not running")
        subscriber = Subscriber(queue=asyncio.Queue(maxsize=self.queue_size))
        self._subscribers[subscriber.id] = subscriber
        logger.info(f"✅ Client connected: {subscriber.id}")
        return subscriber

    def disconnect(self, subscriber: Subscriber) -> None:
        for topic in list(subscriber.topics):
            self._rooms[topic].discard(subscriber)
        subscriber.topics.clear()
        subscriber.closed = True
        if self._subscribers.pop(subscriber.id, None) is not None:
            logger.info(f"❌ Client disconnected: {subscriber.id}")

    def subscribe(self, subscriber: Subscriber, topic: Topic) -> None:
        if subscriber.closed:
            raise TransientInfraError(f"Connection {subscriber.id} is closed")
        self._rooms[topic].add(subscriber)
        subscriber.topics.add(topic)
        logger.debug(f"📢 Client {subscriber.id} subscribed to {topic.value}")

    def unsubscribe(self, subscriber: Subscriber, topic: Topic) -> None:
        self._rooms[topic].discard(subscriber)
        subscriber.topics.discard(topic)
        logger.debug(f"📢 Client {subscriber.id} unsubscribed from {topic.value}")

    async def publish(self, event: BaseEvent) -> int:
        if not self._running:
            raise TransientInfraError("Event bus is not running")

        delivered = 0
        for subscriber in list(self._rooms[event.topic]):
            try:
                subscriber.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                subscriber.dropped += 1
                logger.warning(
                    f"Dropped {event.type} for slow client {subscriber.id} "
                    f"({subscriber.dropped} dropped so far)"
                )

        logger.debug(f"📢 Emitted {event.channel}:{event.type} to {delivered} client(s)")
        return delivered

    async def health_check(self) -> bool:
        return self._running
