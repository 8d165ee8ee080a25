"""Automation management module.

Provides run orchestration, record storage and the error taxonomy.

Public Interface:
    - AutomationManager: Starts, bounds, tracks and finalizes runs
    - AutomationStore: Persists automations and run history per workspace
    - EventSink: Receiver protocol for lifecycle events
"""

from .errors import AdmissionRejectedError
from .errors import AutomationNotFoundError
from .errors import InvalidRunTransitionError
from .errors import RunNotFoundError
from .errors import WorkspaceNotFoundError
from .manager import AutomationManager
from .manager import EventSink
from .manager import NullEventSink
from .store import AutomationStore

__all__ = [
    "AdmissionRejectedError",
    "AutomationManager",
    "AutomationNotFoundError",
    "AutomationStore",
    "EventSink",
    "InvalidRunTransitionError",
    "NullEventSink",
    "RunNotFoundError",
    "WorkspaceNotFoundError",
]
