"""Automation lifecycle events.

Published by the AutomationManager to an EventSink; the daemon forwards them
to SSE subscribers at /api/v1/events.
"""

from datetime import UTC
from datetime import datetime
from typing import Literal

from pydantic import Field

from autopilot_library.models.automations import Automation
from autopilot_library.models.automations import AutomationRun
from autopilot_library.models.base import CamelCaseModel


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AutomationEvent(CamelCaseModel):
    """Base model for automation events."""

    event_type: str
    timestamp: datetime = Field(default_factory=_utcnow)
    workspace_id: str


class AutomationCreatedEvent(AutomationEvent):
    event_type: Literal["automation_created"] = "automation_created"
    automation: Automation


class AutomationUpdatedEvent(AutomationEvent):
    event_type: Literal["automation_updated"] = "automation_updated"
    automation: Automation


class AutomationDeletedEvent(AutomationEvent):
    event_type: Literal["automation_deleted"] = "automation_deleted"
    automation_id: str


class AutomationEnabledEvent(AutomationEvent):
    event_type: Literal["automation_enabled"] = "automation_enabled"
    automation: Automation


class AutomationDisabledEvent(AutomationEvent):
    event_type: Literal["automation_disabled"] = "automation_disabled"
    automation: Automation


class RunStartedEvent(AutomationEvent):
    event_type: Literal["run_started"] = "run_started"
    run: AutomationRun


class RunCompletedEvent(AutomationEvent):
    event_type: Literal["run_completed"] = "run_completed"
    run: AutomationRun


class RunFailedEvent(AutomationEvent):
    event_type: Literal["run_failed"] = "run_failed"
    run: AutomationRun


class RunCancelledEvent(AutomationEvent):
    event_type: Literal["run_cancelled"] = "run_cancelled"
    run: AutomationRun


class AutomationsChangedEvent(AutomationEvent):
    """Full automation list of a workspace after run aggregates changed."""

    event_type: Literal["automations_changed"] = "automations_changed"
    automations: list[Automation]
