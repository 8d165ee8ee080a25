"""Global SSE event streaming endpoint.

Streams every automation lifecycle event published by the manager.
"""

import asyncio
import json
import logging
from datetime import UTC
from datetime import datetime

from fastapi import APIRouter
from sse_starlette import ServerSentEvent
from sse_starlette.sse import EventSourceResponse

from autopilotd.services.global_events import get_global_events

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.get("")
async def global_event_stream() -> EventSourceResponse:
    """Global SSE stream for automation events.

    Returns:
        SSE EventSourceResponse streaming global events

    Events:
        - connected: Initial connection established
        - keepalive: Periodic heartbeat (every 30s)
        - automation_created / automation_updated / automation_deleted
        - automation_enabled / automation_disabled
        - run_started / run_completed / run_failed / run_cancelled
        - automations_changed: Full automation list of a workspace
        - error: Stream error occurred
    """

    async def event_generator():
        emitter = get_global_events()
        queue = emitter.subscribe()

        try:
            yield ServerSentEvent(
                data=json.dumps({"timestamp": datetime.now(UTC).isoformat()}),
                event="connected",
            )

            logger.info("Global SSE stream connected")

            while True:
                try:
                    # Timeout allows keepalive + cancellation
                    event = await asyncio.wait_for(queue.get(), timeout=30.0)
                    yield ServerSentEvent(
                        data=json.dumps(event["data"]),
                        event=event["event"],
                    )

                except TimeoutError:
                    yield ServerSentEvent(
                        data=json.dumps({"timestamp": datetime.now(UTC).isoformat()}),
                        event="keepalive",
                    )

        except asyncio.CancelledError:
            logger.info("Global SSE stream disconnected")

        except Exception as e:
            logger.error(f"Global SSE stream error: {e}")
            yield ServerSentEvent(
                data=json.dumps({"error": str(e), "timestamp": datetime.now(UTC).isoformat()}),
                event="error",
            )

        finally:
            emitter.unsubscribe(queue)
            logger.info("Unsubscribed from global events")

    return EventSourceResponse(event_generator())
