"""SSE streaming utilities for autopilotd."""

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


class EventQueueEmitter:
    """SSE emitter that queues events for async consumption.

    Allows multiple subscribers to receive the same events.
    Each subscriber gets their own queue to prevent blocking.
    """

    def __init__(self: "EventQueueEmitter") -> None:
        self.queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._lock = asyncio.Lock()

    def subscribe(self: "EventQueueEmitter") -> asyncio.Queue[dict[str, Any]]:
        """Create new subscriber queue.

        Returns:
            asyncio.Queue that will receive all emitted events
        """
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.queues.append(queue)
        return queue

    async def emit(self: "EventQueueEmitter", event_type: str, data: dict[str, Any]) -> None:
        """Emit event to all subscriber queues.

        Args:
            event_type: Event type identifier (e.g., "run_started")
            data: Event payload
        """
        event = {"event": event_type, "data": data}
        async with self._lock:
            for queue in self.queues:
                try:
                    await queue.put(event)
                except Exception as e:
                    logger.error(f"Failed to emit event to queue: {e}")

    def emit_nowait(self: "EventQueueEmitter", event_type: str, data: dict[str, Any]) -> None:
        """Emit event from synchronous code. Subscriber queues are unbounded."""
        event = {"event": event_type, "data": data}
        for queue in list(self.queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropped {event_type} event for a full subscriber queue")

    def unsubscribe(self: "EventQueueEmitter", queue: asyncio.Queue[dict[str, Any]]) -> None:
        """Remove subscriber queue.

        Args:
            queue: Queue to remove
        """
        if queue in self.queues:
            self.queues.remove(queue)
