"""EventBus implementation for lifecycle notifications."""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from ..logging_config import get_logger
from ..models import LifecycleEvent, Topic
from ..storage import IStorage

logger = get_logger(__name__)


TopicHandler = Callable[[LifecycleEvent], Awaitable[None]]


class IEventBus(Protocol):
    """In-memory pub/sub for lifecycle events."""

    def subscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Subscribe a handler to a topic."""
        ...

    def unsubscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Remove a handler from a topic."""
        ...

    async def publish(self, event: LifecycleEvent) -> None:
        """Publish event: calls subscriber callbacks, persists to Storage."""
        ...

    async def emit(self, topic: Topic, payload: dict, source: str) -> LifecycleEvent:
        """Build and publish an event."""
        ...


class EventBus:
    """In-memory pub/sub event bus."""

    def __init__(self, storage: IStorage | None = None):
        self._storage = storage
        self._subscribers: dict[Topic, list[TopicHandler]] = {
            topic: [] for topic in Topic
        }

    def subscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Subscribe a handler to a topic."""
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Remove a handler from a topic."""
        if handler in self._subscribers[topic]:
            self._subscribers[topic].remove(handler)

    async def publish(self, event: LifecycleEvent) -> None:
        """Publish event: calls subscriber callbacks, persists to Storage."""
        if not event.id:
            event.id = str(uuid.uuid4())

        handlers = list(self._subscribers.get(event.topic, []))

        # Call all handlers concurrently
        if handlers:
            results = await asyncio.gather(
                *[handler(event) for handler in handlers],
                return_exceptions=True,
            )

            for i, result in enumerate(results):
                if isinstance(result, Exception):
                    logger.error(
                        "Error in handler %s for %s: %s", i, event.topic.value, result
                    )

        if self._storage is not None:
            await self._storage.save_event(event)

    async def emit(self, topic: Topic, payload: dict, source: str) -> LifecycleEvent:
        """Build and publish an event."""
        event = LifecycleEvent(
            id=str(uuid.uuid4()),
            topic=topic,
            payload=payload,
            source=source,
            timestamp=datetime.now(timezone.utc),
        )
        await self.publish(event)
        return event
