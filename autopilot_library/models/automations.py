"""Automation models for trigger-driven agent tasks."""

from datetime import datetime
from typing import Annotated
from typing import Any
from typing import Literal

from pydantic import Field
from pydantic import TypeAdapter
from pydantic import field_validator

from autopilot_library.models.base import CamelCaseModel

TriggerType = Literal[
    "schedule",
    "file-change",
    "hotkey",
    "webhook",
    "deep-link",
    "app-event",
    "power-event",
    "clipboard",
    "folder-action",
    "manual",
]

FileChangeEvent = Literal["add", "change", "unlink"]
AppEvent = Literal["app-ready", "window-focus", "window-blur"]
PowerEvent = Literal["on-ac", "on-battery", "suspend", "resume", "lock-screen", "unlock-screen"]
PermissionMode = Literal["safe", "ask", "allow-all"]

AutomationRunStatus = Literal["pending", "running", "success", "failure", "cancelled"]
AutomationLastStatus = Literal["success", "failure", "running"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"success", "failure", "cancelled"})


# --- Trigger configurations ---


class ScheduleTriggerConfig(CamelCaseModel):
    """Cron schedule evaluated in an optional timezone.

    Supports standard 5-part expressions and extended 6-part expressions
    with a leading seconds field.
    """

    type: Literal["schedule"] = "schedule"
    cron: str | None = Field(default=None, description="Cron expression (e.g. '0 9 * * *')")
    timezone: str | None = Field(default=None, description="IANA timezone (default: system timezone)")

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        parts = v.split()
        if len(parts) not in (5, 6):
            raise ValueError(f"Cron expression must have 5 or 6 parts, got {len(parts)}")
        return v.strip()


class FileChangeTriggerConfig(CamelCaseModel):
    """Watch one or more paths and fire on debounced batches of changes."""

    type: Literal["file-change"] = "file-change"
    paths: list[str] = Field(default_factory=list, description="Absolute paths to watch")
    patterns: list[str] = Field(default_factory=list, description="Glob patterns (e.g. '*.md')")
    events: list[FileChangeEvent] = Field(
        default_factory=lambda: ["add", "change", "unlink"],
        description="Change kinds that qualify",
    )
    debounce_ms: int = Field(default=5000, ge=0, description="Quiet period before firing")


class HotkeyTriggerConfig(CamelCaseModel):
    type: Literal["hotkey"] = "hotkey"
    accelerator: str = Field(default="", description="Accelerator string (e.g. 'CommandOrControl+Shift+A')")


class WebhookTriggerConfig(CamelCaseModel):
    type: Literal["webhook"] = "webhook"
    path: str | None = Field(default=None, description="Route path (default: /api/v1/hooks/{workspace}/{id})")
    secret: str | None = Field(default=None, description="Shared secret checked on inbound requests")


class DeepLinkTriggerConfig(CamelCaseModel):
    type: Literal["deep-link"] = "deep-link"


class AppEventTriggerConfig(CamelCaseModel):
    type: Literal["app-event"] = "app-event"
    events: list[AppEvent] = Field(default_factory=list)


class PowerEventTriggerConfig(CamelCaseModel):
    type: Literal["power-event"] = "power-event"
    events: list[PowerEvent] = Field(default_factory=list)


class ClipboardTriggerConfig(CamelCaseModel):
    type: Literal["clipboard"] = "clipboard"
    pattern: str | None = Field(default=None, description="Regular expression clipboard text must match")
    poll_interval_ms: int = Field(default=2000, gt=0, description="Clipboard poll interval")


class FolderActionTriggerConfig(CamelCaseModel):
    """Fire when new files matching the filters land in a folder."""

    type: Literal["folder-action"] = "folder-action"
    folder_path: str = Field(default="", description="Folder to watch")
    extensions: list[str] = Field(default_factory=list, description="Extension filter (e.g. ['.pdf'])")
    name_pattern: str | None = Field(default=None, description="Glob pattern for file names")
    min_size: int | None = Field(default=None, ge=0, description="Minimum file size in bytes")
    max_size: int | None = Field(default=None, ge=0, description="Maximum file size in bytes")
    done_folder: str | None = Field(default=None, description="Subfolder for processed files")


class ManualTriggerConfig(CamelCaseModel):
    type: Literal["manual"] = "manual"


TriggerConfig = Annotated[
    ScheduleTriggerConfig
    | FileChangeTriggerConfig
    | HotkeyTriggerConfig
    | WebhookTriggerConfig
    | DeepLinkTriggerConfig
    | AppEventTriggerConfig
    | PowerEventTriggerConfig
    | ClipboardTriggerConfig
    | FolderActionTriggerConfig
    | ManualTriggerConfig,
    Field(discriminator="type"),
]

trigger_config_adapter: TypeAdapter[TriggerConfig] = TypeAdapter(TriggerConfig)


# --- Action configuration ---


class ActionConfig(CamelCaseModel):
    """Execution policy applied when an automation runs.

    Unset fields fall back to the daemon settings defaults.
    """

    model: str | None = None
    permission_mode: PermissionMode | None = None
    max_turns: int | None = Field(default=None, gt=0)
    timeout_seconds: int | None = Field(default=None, gt=0)
    source_slugs: list[str] = Field(default_factory=list)
    skill_slugs: list[str] = Field(default_factory=list)
    working_directory: str | None = None


# --- Automations ---


class Automation(CamelCaseModel):
    """Automation definition: a prompt, a trigger and an execution policy."""

    id: str = Field(description="Unique automation identifier")
    workspace_id: str = Field(description="Workspace this automation belongs to")
    name: str = Field(description="User-facing name")
    prompt: str = Field(description="Natural language instructions for the agent")
    trigger_config: TriggerConfig
    action_config: ActionConfig = Field(default_factory=ActionConfig)
    enabled: bool = Field(default=False, description="Whether the trigger is active")
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    run_count: int = 0
    last_status: AutomationLastStatus | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Automation name cannot be empty")
        return v.strip()


class CreateAutomationInput(CamelCaseModel):
    name: str
    prompt: str
    trigger_config: TriggerConfig
    action_config: ActionConfig = Field(default_factory=ActionConfig)
    enabled: bool = False


class UpdateAutomationInput(CamelCaseModel):
    """Partial update. Trigger and action configs are replaced whole."""

    name: str | None = None
    prompt: str | None = None
    trigger_config: TriggerConfig | None = None
    action_config: ActionConfig | None = None
    enabled: bool | None = None


# --- Runs ---


class AutomationRun(CamelCaseModel):
    """Record of a single automation execution.

    Created in ``pending``; ``success``, ``failure`` and ``cancelled`` are
    terminal and the record is immutable afterwards.
    """

    id: str
    automation_id: str
    status: AutomationRunStatus = "pending"
    started_at: datetime
    completed_at: datetime | None = None
    work_unit_id: str | None = Field(default=None, description="Execution service work unit")
    summary: str | None = None
    error: str | None = None
    triggered_by: TriggerType
    trigger_context: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES
