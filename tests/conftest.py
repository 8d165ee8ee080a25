"""
Shared pytest fixtures for the autopilot test suite.

Provides fixtures for:
- Isolated AUTOPILOT_HOME and workspace roots
- An in-memory execution service that completes work units on demand
- A recording event sink and a scriptable host environment
- A fully wired AutomationManager
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# autopilotd.main loads settings at import time; keep it away from the real home
os.environ.setdefault("AUTOPILOT_HOME", tempfile.mkdtemp(prefix="autopilot-tests-"))

from autopilot_library.automations.manager import AutomationManager  # noqa: E402
from autopilot_library.automations.store import AutomationStore  # noqa: E402
from autopilot_library.config.settings import AutopilotSettings  # noqa: E402
from autopilot_library.config.settings import WorkspaceConfig  # noqa: E402
from autopilot_library.execution.service import ExecutionNotification  # noqa: E402
from autopilot_library.execution.service import ExecutionService  # noqa: E402
from autopilot_library.execution.service import WorkPolicy  # noqa: E402
from autopilot_library.execution.service import WorkUnit  # noqa: E402
from autopilot_library.models.automations import Automation  # noqa: E402
from autopilot_library.models.automations import CreateAutomationInput  # noqa: E402
from autopilot_library.models.automations import ManualTriggerConfig  # noqa: E402
from autopilot_library.models.events import AutomationEvent  # noqa: E402
from autopilot_library.triggers.host import HostEnvironment  # noqa: E402
from autopilot_library.workspaces.registry import WorkspaceRegistry  # noqa: E402


class FakeExecutionService(ExecutionService):
    """Execution service that never runs anything until told to.

    Tests call ``complete``/``fail`` to deliver notifications, and can make
    ``create_work_unit`` or ``deliver_message`` raise.
    """

    def __init__(self) -> None:
        super().__init__()
        self.units: dict[str, WorkUnit] = {}
        self.messages: dict[str, str] = {}
        self.scopes: dict[str, list[str]] = {}
        self.cancelled: list[str] = []
        self.create_error: Exception | None = None
        self.deliver_error: Exception | None = None
        self._counter = 0

    async def create_work_unit(self, workspace_id: str, policy: WorkPolicy) -> WorkUnit:
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        unit = WorkUnit(id=f"unit-{self._counter}", workspace_id=workspace_id, policy=policy)
        self.units[unit.id] = unit
        return unit

    async def set_resource_scope(self, work_unit_id: str, source_slugs: list[str]) -> None:
        self.scopes[work_unit_id] = list(source_slugs)

    async def deliver_message(self, work_unit_id: str, text: str) -> None:
        if self.deliver_error is not None:
            raise self.deliver_error
        self.messages[work_unit_id] = text

    async def cancel(self, work_unit_id: str) -> None:
        self.cancelled.append(work_unit_id)

    def complete(self, work_unit_id: str, summary: str | None = None) -> None:
        self._notify(ExecutionNotification(kind="complete", work_unit_id=work_unit_id, summary=summary))

    def fail(self, work_unit_id: str, error: str) -> None:
        self._notify(ExecutionNotification(kind="error", work_unit_id=work_unit_id, error=error))


class RecordingSink:
    """EventSink that keeps every published event."""

    def __init__(self) -> None:
        self.events: list[AutomationEvent] = []

    def publish(self, event: AutomationEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.event_type for event in self.events]


class FakeHost(HostEnvironment):
    """Host with scriptable clipboard and hotkeys."""

    def __init__(self, accept_hotkeys: bool = True) -> None:
        super().__init__()
        self.accept_hotkeys = accept_hotkeys
        self.hotkeys: dict[str, Callable[[], None]] = {}
        self.clipboard = ""

    def register_hotkey(self, accelerator: str, callback: Callable[[], None]) -> bool:
        if not self.accept_hotkeys or accelerator in self.hotkeys:
            return False
        self.hotkeys[accelerator] = callback
        return True

    def unregister_hotkey(self, accelerator: str) -> None:
        self.hotkeys.pop(accelerator, None)

    def read_clipboard(self) -> str:
        return self.clipboard

    def press(self, accelerator: str) -> None:
        self.hotkeys[accelerator]()


@pytest.fixture
def mock_storage_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point AUTOPILOT_HOME at a temporary directory.

    Example:
        >>> def test_with_isolated_storage(mock_storage_env):
        ...     assert get_config_dir().is_relative_to(mock_storage_env)
    """
    home = tmp_path / "autopilot-home"
    monkeypatch.setenv("AUTOPILOT_HOME", str(home))
    for name in ("AUTOPILOT_CONFIG_DIR", "AUTOPILOT_STATE_DIR", "AUTOPILOT_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    """Root directory of the default test workspace."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def workspaces(workspace_root: Path) -> WorkspaceRegistry:
    return WorkspaceRegistry([WorkspaceConfig(id="default", name="Default", root_path=str(workspace_root))])


@pytest.fixture
def settings(workspace_root: Path) -> AutopilotSettings:
    return AutopilotSettings(
        max_concurrent_runs=2,
        workspaces=[WorkspaceConfig(id="default", name="Default", root_path=str(workspace_root))],
    )


@pytest.fixture
def store() -> AutomationStore:
    return AutomationStore()


@pytest.fixture
def execution() -> FakeExecutionService:
    return FakeExecutionService()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
async def manager(
    store: AutomationStore,
    execution: FakeExecutionService,
    workspaces: WorkspaceRegistry,
    settings: AutopilotSettings,
    sink: RecordingSink,
    host: FakeHost,
) -> AsyncGenerator[AutomationManager, None]:
    """Initialized AutomationManager wired to the fakes.

    Shut down after the test so no timers or watchers leak.
    """
    automation_manager = AutomationManager(store, execution, workspaces, settings, sink, host)
    await automation_manager.initialize()
    yield automation_manager
    await automation_manager.shutdown()


@pytest.fixture
def make_automation(store: AutomationStore, workspace_root: Path) -> Callable[..., Automation]:
    """Factory that persists an automation directly through the store.

    Example:
        >>> automation = make_automation(name="Nightly", trigger_config=ScheduleTriggerConfig(cron="0 2 * * *"))
    """

    def _make(**overrides: Any) -> Automation:
        data: dict[str, Any] = {
            "name": "Test automation",
            "prompt": "Summarize the changes",
            "trigger_config": ManualTriggerConfig(),
        }
        data.update(overrides)
        return store.create_automation(workspace_root, "default", CreateAutomationInput(**data))

    return _make
