"""Global event service for system-wide event emission.

This service provides a singleton EventQueueEmitter for automation events that
can be subscribed to by multiple clients via the global SSE endpoint.
"""

import asyncio

from autopilot_library.models.events import AutomationEvent
from autopilotd.streaming import EventQueueEmitter


class GlobalEventService:
    """Singleton service for global event emission."""

    _instance: EventQueueEmitter | None = None

    @classmethod
    def get_instance(cls) -> EventQueueEmitter:
        """Get the singleton EventQueueEmitter instance."""
        if cls._instance is None:
            cls._instance = EventQueueEmitter()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (all subscribers are lost)."""
        cls._instance = None

    @classmethod
    async def emit(cls, event: AutomationEvent) -> None:
        """Emit event to all subscribers.

        Args:
            event: The event to emit
        """
        await cls.get_instance().emit(event.event_type, event.model_dump(mode="json", by_alias=True))

    @classmethod
    def publish(cls, event: AutomationEvent) -> None:
        """Emit event from synchronous code (the automation manager)."""
        cls.get_instance().emit_nowait(event.event_type, event.model_dump(mode="json", by_alias=True))

    @classmethod
    def subscribe(cls) -> asyncio.Queue:
        """Subscribe to global event stream.

        Returns:
            A queue that will receive all emitted events
        """
        return cls.get_instance().subscribe()

    @classmethod
    def unsubscribe(cls, queue: asyncio.Queue) -> None:
        """Unsubscribe from global event stream.

        Args:
            queue: The queue to unsubscribe
        """
        cls.get_instance().unsubscribe(queue)


class GlobalEventSink:
    """EventSink that forwards automation events to the global stream."""

    def publish(self, event: AutomationEvent) -> None:
        GlobalEventService.publish(event)


def get_global_events() -> EventQueueEmitter:
    """Convenience function for dependency injection.

    Returns:
        The singleton EventQueueEmitter instance
    """
    return GlobalEventService.get_instance()
