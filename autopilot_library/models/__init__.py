"""Models for autopilot library."""

from .automations import ActionConfig
from .automations import AppEventTriggerConfig
from .automations import Automation
from .automations import AutomationRun
from .automations import ClipboardTriggerConfig
from .automations import CreateAutomationInput
from .automations import DeepLinkTriggerConfig
from .automations import FileChangeTriggerConfig
from .automations import FolderActionTriggerConfig
from .automations import HotkeyTriggerConfig
from .automations import ManualTriggerConfig
from .automations import PowerEventTriggerConfig
from .automations import ScheduleTriggerConfig
from .automations import TriggerConfig
from .automations import TriggerType
from .automations import UpdateAutomationInput
from .automations import WebhookTriggerConfig
from .events import AutomationEvent

__all__ = [
    "ActionConfig",
    "AppEventTriggerConfig",
    "Automation",
    "AutomationEvent",
    "AutomationRun",
    "ClipboardTriggerConfig",
    "CreateAutomationInput",
    "DeepLinkTriggerConfig",
    "FileChangeTriggerConfig",
    "FolderActionTriggerConfig",
    "HotkeyTriggerConfig",
    "ManualTriggerConfig",
    "PowerEventTriggerConfig",
    "ScheduleTriggerConfig",
    "TriggerConfig",
    "TriggerType",
    "UpdateAutomationInput",
    "WebhookTriggerConfig",
]
