"""Execution service contract consumed by the AutomationManager.

An execution service creates addressable units of agent work, accepts a
message for each, can cancel them, and reports their outcome through
notifications keyed by work unit id.

Contract:
- Inputs: WorkPolicy per work unit, message text
- Outputs: WorkUnit handles, ExecutionNotification stream
- Side Effects: Implementation specific (processes, remote sessions, ...)
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)

NotificationKind = Literal["complete", "error", "progress"]


@dataclass(frozen=True)
class WorkPolicy:
    """Execution policy resolved from an automation's ActionConfig."""

    permission_mode: str
    model: str
    working_directory: str | None = None
    max_turns: int | None = None
    hidden: bool = True


@dataclass(frozen=True)
class WorkUnit:
    id: str
    workspace_id: str
    policy: WorkPolicy


@dataclass(frozen=True)
class ExecutionNotification:
    """Outcome or progress signal for one work unit."""

    kind: str
    work_unit_id: str
    error: str | None = None
    summary: str | None = None


NotificationListener = Callable[[ExecutionNotification], None]


class ExecutionService:
    """Base class for execution services.

    Subclasses implement the async work-unit operations and call
    ``_notify`` when a work unit completes or fails. Listeners are invoked
    synchronously, in registration order, on the event loop thread.
    """

    def __init__(self) -> None:
        self._listeners: list[NotificationListener] = []

    async def create_work_unit(self, workspace_id: str, policy: WorkPolicy) -> WorkUnit:
        raise NotImplementedError

    async def set_resource_scope(self, work_unit_id: str, source_slugs: list[str]) -> None:
        """Restrict the work unit to the given sources. Default: no restriction support."""
        logger.debug(f"Resource scope not supported, ignoring {source_slugs} for {work_unit_id}")

    async def deliver_message(self, work_unit_id: str, text: str) -> None:
        raise NotImplementedError

    async def cancel(self, work_unit_id: str) -> None:
        raise NotImplementedError

    def add_listener(self, listener: NotificationListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: NotificationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, notification: ExecutionNotification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.error(f"Execution listener failed for {notification.work_unit_id}: {e}", exc_info=True)
