"""Autopilot library layer.

Business logic for trigger-driven automations, used by the autopilotd
daemon (transport).

Public Interface:
    Modules:
    - automations: Run orchestration and record storage
    - triggers: Trigger registry and host facilities
    - execution: Execution service contract and command implementation
    - config: Settings loading
    - models: Shared data structures
    - storage: Directory resolution
    - workspaces: Workspace resolution
"""

from .automations import AutomationManager
from .automations import AutomationStore
from .models import Automation
from .models import AutomationRun

__all__ = [
    "Automation",
    "AutomationManager",
    "AutomationRun",
    "AutomationStore",
]
