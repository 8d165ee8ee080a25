"""Execution service module.

Public Interface:
    - ExecutionService: Contract consumed by the AutomationManager
    - CommandExecutionService: Subprocess-backed implementation
    - WorkPolicy, WorkUnit, ExecutionNotification: Contract data types
"""

from .command import CommandExecutionService
from .service import ExecutionNotification
from .service import ExecutionService
from .service import NotificationListener
from .service import WorkPolicy
from .service import WorkUnit

__all__ = [
    "CommandExecutionService",
    "ExecutionNotification",
    "ExecutionService",
    "NotificationListener",
    "WorkPolicy",
    "WorkUnit",
]
