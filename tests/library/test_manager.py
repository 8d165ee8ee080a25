"""Tests for AutomationManager run orchestration."""

import asyncio
from collections.abc import AsyncGenerator
from collections.abc import Callable
from pathlib import Path

import pytest

from autopilot_library.automations.errors import AdmissionRejectedError
from autopilot_library.automations.errors import AutomationNotFoundError
from autopilot_library.automations.errors import InvalidWebhookSecretError
from autopilot_library.automations.errors import RunNotFoundError
from autopilot_library.automations.errors import WorkspaceNotFoundError
from autopilot_library.automations.manager import INTERRUPTED_MESSAGE
from autopilot_library.automations.manager import SHUTDOWN_MESSAGE
from autopilot_library.automations.manager import TIMEOUT_MESSAGE
from autopilot_library.automations.manager import AutomationManager
from autopilot_library.automations.manager import compose_prompt
from autopilot_library.automations.store import AutomationStore
from autopilot_library.config.settings import AutopilotSettings
from autopilot_library.execution.service import ExecutionNotification
from autopilot_library.models.automations import ActionConfig
from autopilot_library.models.automations import Automation
from autopilot_library.models.automations import CreateAutomationInput
from autopilot_library.models.automations import DeepLinkTriggerConfig
from autopilot_library.models.automations import HotkeyTriggerConfig
from autopilot_library.models.automations import ManualTriggerConfig
from autopilot_library.models.automations import ScheduleTriggerConfig
from autopilot_library.models.automations import UpdateAutomationInput
from autopilot_library.models.automations import WebhookTriggerConfig
from autopilot_library.workspaces.registry import WorkspaceRegistry

from conftest import FakeExecutionService
from conftest import FakeHost
from conftest import RecordingSink


class GatedExecutionService(FakeExecutionService):
    """Holds ``deliver_message`` until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def deliver_message(self, work_unit_id: str, text: str) -> None:
        await self.gate.wait()
        await super().deliver_message(work_unit_id, text)


@pytest.fixture
def build_manager(
    store: AutomationStore,
    workspaces: WorkspaceRegistry,
    settings: AutopilotSettings,
    sink: RecordingSink,
    host: FakeHost,
):
    """Factory for managers with a custom execution service or admission bound."""

    def _build(execution: FakeExecutionService, max_concurrent_runs: int | None = None) -> AutomationManager:
        manager_settings = settings
        if max_concurrent_runs is not None:
            manager_settings = settings.model_copy(update={"max_concurrent_runs": max_concurrent_runs})
        return AutomationManager(store, execution, workspaces, manager_settings, sink, host)

    return _build


@pytest.fixture
async def single_slot_manager(
    build_manager, execution: FakeExecutionService
) -> AsyncGenerator[AutomationManager, None]:
    automation_manager = build_manager(execution, max_concurrent_runs=1)
    await automation_manager.initialize()
    yield automation_manager
    await automation_manager.shutdown()


async def settle() -> None:
    """Let spawned tasks run to their next suspension point."""
    for _ in range(5):
        await asyncio.sleep(0)


class TestComposePrompt:
    def test_without_context_returns_prompt(self) -> None:
        assert compose_prompt("Summarize", None) == "Summarize"
        assert compose_prompt("Summarize", {}) == "Summarize"

    def test_appends_context_block(self) -> None:
        message = compose_prompt("Summarize", {"accelerator": "F5"})

        assert message == 'Summarize\n\n---\nTrigger context:\n{\n  "accelerator": "F5"\n}'


class TestExecute:
    """Test starting runs."""

    async def test_run_reaches_running(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        sink: RecordingSink,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()

        run = await manager.execute("default", automation.id, "manual")

        assert run.status == "running"
        assert run.work_unit_id == "unit-1"
        assert execution.messages["unit-1"] == "Summarize the changes"
        assert manager.active_run_count() == 1
        assert manager.is_automation_running(automation.id)
        assert sink.types() == ["run_started"]

    async def test_context_is_recorded_and_delivered(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        context = {"changes": [{"path": "/tmp/a.md", "event": "add"}]}

        run = await manager.execute("default", automation.id, "file-change", context)

        assert run.trigger_context == context
        assert run.triggered_by == "file-change"
        assert execution.messages[run.work_unit_id] == compose_prompt("Summarize the changes", context)

    async def test_policy_resolves_against_settings(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation(action_config=ActionConfig(model="opus", source_slugs=["github", "linear"]))

        run = await manager.execute("default", automation.id, "manual")

        policy = execution.units[run.work_unit_id].policy
        assert policy.model == "opus"
        assert policy.permission_mode == "safe"
        assert policy.max_turns == 15
        assert policy.hidden is True
        assert execution.scopes[run.work_unit_id] == ["github", "linear"]

    async def test_unknown_automation(self, manager: AutomationManager) -> None:
        with pytest.raises(AutomationNotFoundError):
            await manager.execute("default", "missing", "manual")

    async def test_unknown_workspace(self, manager: AutomationManager) -> None:
        with pytest.raises(WorkspaceNotFoundError):
            await manager.execute("elsewhere", "missing", "manual")


class TestAdmission:
    """Test the global concurrency bound."""

    async def test_rejects_beyond_limit_without_record(
        self,
        manager: AutomationManager,
        store: AutomationStore,
        workspace_root: Path,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        await manager.execute("default", automation.id, "manual")
        await manager.execute("default", automation.id, "manual")

        with pytest.raises(AdmissionRejectedError, match=r"Concurrency limit reached \(2 max\)"):
            await manager.execute("default", automation.id, "manual")

        assert len(store.list_runs(workspace_root)) == 2
        assert manager.active_run_count() == 2

    async def test_concurrent_requests_respect_limit(
        self, manager: AutomationManager, make_automation: Callable[..., Automation]
    ) -> None:
        automation = make_automation()

        results = await asyncio.gather(
            *(manager.execute("default", automation.id, "manual") for _ in range(4)),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AdmissionRejectedError) for r in results) == 2
        assert manager.active_run_count() == 2

    async def test_slot_freed_by_completion(
        self,
        single_slot_manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        first = await single_slot_manager.execute("default", automation.id, "manual")

        with pytest.raises(AdmissionRejectedError):
            await single_slot_manager.execute("default", automation.id, "manual")

        execution.complete(first.work_unit_id, summary="done")
        second = await single_slot_manager.execute("default", automation.id, "manual")

        assert second.status == "running"
        assert single_slot_manager.get_run("default", first.id).status == "success"


class TestCompletion:
    """Test finalization from execution notifications."""

    async def test_complete_marks_success(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        sink: RecordingSink,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        run = await manager.execute("default", automation.id, "manual")

        execution.complete(run.work_unit_id, summary="Wrote the digest")

        stored = manager.get_run("default", run.id)
        assert stored.status == "success"
        assert stored.summary == "Wrote the digest"
        assert stored.completed_at is not None
        assert manager.active_run_count() == 0
        updated = manager.get_automation("default", automation.id)
        assert updated.last_status == "success"
        assert updated.run_count == 1
        assert sink.types() == ["run_started", "run_completed", "automations_changed"]

    async def test_error_marks_failure(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        run = await manager.execute("default", automation.id, "manual")

        execution.fail(run.work_unit_id, "model overloaded")

        stored = manager.get_run("default", run.id)
        assert stored.status == "failure"
        assert stored.error == "model overloaded"
        assert manager.get_automation("default", automation.id).last_status == "failure"

    async def test_duplicate_notifications_are_ignored(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        sink: RecordingSink,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        run = await manager.execute("default", automation.id, "manual")

        execution.complete(run.work_unit_id)
        execution.fail(run.work_unit_id, "late error")
        execution.complete(run.work_unit_id)

        assert manager.get_run("default", run.id).status == "success"
        assert manager.get_automation("default", automation.id).run_count == 1
        assert sink.types().count("run_completed") == 1
        assert "run_failed" not in sink.types()

    async def test_progress_and_unknown_units_ignored(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        run = await manager.execute("default", make_automation().id, "manual")

        execution._notify(ExecutionNotification(kind="progress", work_unit_id=run.work_unit_id))
        execution.complete("unit-999")

        assert manager.get_run("default", run.id).status == "running"
        assert manager.active_run_count() == 1


class TestSetupFailure:
    async def test_create_failure_recorded_and_raised(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        sink: RecordingSink,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        execution.create_error = RuntimeError("no sessions available")

        with pytest.raises(RuntimeError, match="no sessions available"):
            await manager.execute("default", automation.id, "manual")

        runs = manager.list_runs("default", automation.id)
        assert len(runs) == 1
        assert runs[0].status == "failure"
        assert runs[0].error == "no sessions available"
        assert manager.active_run_count() == 0
        assert "run_failed" in sink.types()

    async def test_delivery_failure_abandons_work_unit(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        execution.deliver_error = ConnectionError("agent went away")

        with pytest.raises(ConnectionError):
            await manager.execute("default", automation.id, "manual")

        assert execution.cancelled == ["unit-1"]
        run = manager.list_runs("default", automation.id)[0]
        assert run.status == "failure"
        assert run.work_unit_id == "unit-1"


class TestTimeout:
    async def test_timeout_marks_failure(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation(action_config=ActionConfig(timeout_seconds=1))
        run = await manager.execute("default", automation.id, "manual")

        await asyncio.sleep(1.3)

        stored = manager.get_run("default", run.id)
        assert stored.status == "failure"
        assert stored.error == TIMEOUT_MESSAGE
        assert manager.active_run_count() == 0
        assert execution.cancelled == [run.work_unit_id]

    async def test_completion_disarms_timeout(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation(action_config=ActionConfig(timeout_seconds=1))
        run = await manager.execute("default", automation.id, "manual")

        execution.complete(run.work_unit_id)
        await asyncio.sleep(1.2)

        assert manager.get_run("default", run.id).status == "success"
        assert execution.cancelled == []


class TestCancel:
    """Test user-initiated cancellation."""

    async def test_cancel_running(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        run = await manager.execute("default", automation.id, "manual")

        assert await manager.cancel("default", run.id) is True

        assert manager.get_run("default", run.id).status == "cancelled"
        assert execution.cancelled == [run.work_unit_id]
        assert manager.active_run_count() == 0

        execution.complete(run.work_unit_id)
        assert manager.get_run("default", run.id).status == "cancelled"

    async def test_cancel_inactive_returns_false(
        self, manager: AutomationManager, make_automation: Callable[..., Automation]
    ) -> None:
        run = await manager.execute("default", make_automation().id, "manual")
        await manager.cancel("default", run.id)

        assert await manager.cancel("default", run.id) is False
        assert await manager.cancel("default", "never-existed") is False

    async def test_cancel_wrong_workspace_returns_false(
        self, manager: AutomationManager, make_automation: Callable[..., Automation]
    ) -> None:
        run = await manager.execute("default", make_automation().id, "manual")

        assert await manager.cancel("elsewhere", run.id) is False
        assert manager.active_run_count() == 1

    async def test_cancel_during_setup_wins(
        self,
        build_manager,
        sink: RecordingSink,
        make_automation: Callable[..., Automation],
    ) -> None:
        execution = GatedExecutionService()
        automation_manager = build_manager(execution)
        await automation_manager.initialize()
        automation = make_automation()

        task = asyncio.create_task(automation_manager.execute("default", automation.id, "manual"))
        await settle()
        run_id = sink.events[0].run.id

        assert await automation_manager.cancel("default", run_id) is True
        execution.gate.set()
        result = await task

        assert result.status == "cancelled"
        assert automation_manager.active_run_count() == 0
        await automation_manager.shutdown()


class TestShutdown:
    async def test_active_runs_cancelled(
        self,
        manager: AutomationManager,
        execution: FakeExecutionService,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        first = await manager.execute("default", automation.id, "manual")
        second = await manager.execute("default", automation.id, "manual")

        await manager.shutdown()

        for run in (first, second):
            stored = manager.get_run("default", run.id)
            assert stored.status == "cancelled"
            assert stored.error == SHUTDOWN_MESSAGE
        assert manager.active_run_count() == 0
        assert sorted(execution.cancelled) == sorted([first.work_unit_id, second.work_unit_id])

        execution.complete(first.work_unit_id)
        assert manager.get_run("default", first.id).status == "cancelled"

    async def test_triggers_unregistered(
        self, manager: AutomationManager, host: FakeHost
    ) -> None:
        manager.create_automation(
            "default",
            CreateAutomationInput(
                name="Hotkey",
                prompt="Go",
                trigger_config=HotkeyTriggerConfig(accelerator="Ctrl+G"),
                enabled=True,
            ),
        )

        await manager.shutdown()

        assert manager.registry.active_count() == 0
        assert host.hotkeys == {}


class TestInitialize:
    async def test_reconciles_orphaned_runs(
        self,
        build_manager,
        execution: FakeExecutionService,
        store: AutomationStore,
        workspace_root: Path,
        make_automation: Callable[..., Automation],
    ) -> None:
        automation = make_automation()
        pending = store.create_run(workspace_root, automation.id, "manual")
        running = store.create_run(workspace_root, automation.id, "manual")
        store.update_run(workspace_root, running.id, status="running")
        finished = store.create_run(workspace_root, automation.id, "manual")
        store.update_run(workspace_root, finished.id, status="success")

        automation_manager = build_manager(execution)
        await automation_manager.initialize()

        for run in (pending, running):
            stored = store.get_run(workspace_root, run.id)
            assert stored.status == "cancelled"
            assert stored.error == INTERRUPTED_MESSAGE
        assert store.get_run(workspace_root, finished.id).status == "success"
        await automation_manager.shutdown()

    async def test_registers_enabled_automations_once(
        self,
        build_manager,
        execution: FakeExecutionService,
        host: FakeHost,
        make_automation: Callable[..., Automation],
    ) -> None:
        make_automation(trigger_config=HotkeyTriggerConfig(accelerator="Ctrl+1"), enabled=True)
        make_automation(trigger_config=HotkeyTriggerConfig(accelerator="Ctrl+2"))

        automation_manager = build_manager(execution)
        await automation_manager.initialize()
        await automation_manager.initialize()

        assert list(host.hotkeys) == ["Ctrl+1"]
        assert automation_manager.registry.active_count() == 1
        await automation_manager.shutdown()


class TestTriggerFire:
    async def test_fire_starts_run(
        self,
        manager: AutomationManager,
        host: FakeHost,
        execution: FakeExecutionService,
    ) -> None:
        automation = manager.create_automation(
            "default",
            CreateAutomationInput(
                name="Quick note",
                prompt="Capture a note",
                trigger_config=HotkeyTriggerConfig(accelerator="Ctrl+N"),
                enabled=True,
            ),
        )

        host.press("Ctrl+N")
        await settle()

        runs = manager.list_runs("default", automation.id)
        assert len(runs) == 1
        assert runs[0].triggered_by == "hotkey"
        assert runs[0].trigger_context["accelerator"] == "Ctrl+N"
        assert "Trigger context:" in execution.messages[runs[0].work_unit_id]

    async def test_fire_over_limit_is_skipped(
        self,
        single_slot_manager: AutomationManager,
        host: FakeHost,
        make_automation: Callable[..., Automation],
    ) -> None:
        busy = make_automation()
        await single_slot_manager.execute("default", busy.id, "manual")
        automation = single_slot_manager.create_automation(
            "default",
            CreateAutomationInput(
                name="Quick note",
                prompt="Capture a note",
                trigger_config=HotkeyTriggerConfig(accelerator="Ctrl+N"),
                enabled=True,
            ),
        )

        host.press("Ctrl+N")
        await settle()

        assert single_slot_manager.list_runs("default", automation.id) == []


class TestAutomationManagement:
    """Test CRUD passthrough, events and trigger refresh."""

    def _create(self, manager: AutomationManager, **overrides) -> Automation:
        data = {
            "name": "Managed",
            "prompt": "Tidy up",
            "trigger_config": HotkeyTriggerConfig(accelerator="Ctrl+M"),
            "enabled": True,
        }
        data.update(overrides)
        return manager.create_automation("default", CreateAutomationInput(**data))

    async def test_create_registers_enabled(
        self, manager: AutomationManager, host: FakeHost, sink: RecordingSink
    ) -> None:
        automation = self._create(manager)

        assert manager.registry.get(automation.id) is not None
        assert "Ctrl+M" in host.hotkeys
        assert sink.types() == ["automation_created"]

    async def test_update_refreshes_trigger(
        self, manager: AutomationManager, host: FakeHost, sink: RecordingSink
    ) -> None:
        automation = self._create(manager)

        manager.update_automation(
            "default",
            automation.id,
            UpdateAutomationInput(trigger_config=HotkeyTriggerConfig(accelerator="Ctrl+Alt+M")),
        )

        assert list(host.hotkeys) == ["Ctrl+Alt+M"]
        assert sink.types()[-1] == "automation_updated"

    async def test_disable_and_enable(
        self, manager: AutomationManager, host: FakeHost, sink: RecordingSink
    ) -> None:
        automation = self._create(manager)

        disabled = manager.set_enabled("default", automation.id, False)
        assert disabled.enabled is False
        assert host.hotkeys == {}

        manager.set_enabled("default", automation.id, True)
        assert "Ctrl+M" in host.hotkeys
        assert sink.types()[-2:] == ["automation_disabled", "automation_enabled"]

    async def test_duplicate_is_not_registered(self, manager: AutomationManager) -> None:
        automation = self._create(manager)

        copy = manager.duplicate_automation("default", automation.id)

        assert copy.name == "Managed (copy)"
        assert manager.registry.get(copy.id) is None

    async def test_delete_unregisters(
        self, manager: AutomationManager, host: FakeHost, sink: RecordingSink
    ) -> None:
        automation = self._create(manager)

        assert manager.delete_automation("default", automation.id) is True

        assert host.hotkeys == {}
        assert sink.types()[-1] == "automation_deleted"
        with pytest.raises(AutomationNotFoundError):
            manager.get_automation("default", automation.id)

    async def test_delete_missing(self, manager: AutomationManager) -> None:
        assert manager.delete_automation("default", "missing") is False

    async def test_schedule_reports_next_run(self, manager: AutomationManager) -> None:
        automation = self._create(manager, trigger_config=ScheduleTriggerConfig(cron="0 9 * * *"))

        listed = manager.list_automations("default")

        assert listed[0].id == automation.id
        assert listed[0].next_run_at is not None

    async def test_get_missing_run(self, manager: AutomationManager) -> None:
        with pytest.raises(RunNotFoundError):
            manager.get_run("default", "missing")

    async def test_list_unknown_workspace(self, manager: AutomationManager) -> None:
        with pytest.raises(WorkspaceNotFoundError):
            manager.list_automations("elsewhere")


class TestWebhookDispatch:
    async def test_matching_secret_runs(self, manager: AutomationManager) -> None:
        automation = manager.create_automation(
            "default",
            CreateAutomationInput(
                name="Deploy hook",
                prompt="Check the deploy",
                trigger_config=WebhookTriggerConfig(secret="s3cret"),
                enabled=True,
            ),
        )

        run = await manager.dispatch_webhook("default", automation.id, {"ref": "main"}, secret="s3cret")

        assert run.triggered_by == "webhook"
        assert run.trigger_context["payload"] == {"ref": "main"}
        assert "receivedAt" in run.trigger_context

    async def test_wrong_secret_rejected(self, manager: AutomationManager) -> None:
        automation = manager.create_automation(
            "default",
            CreateAutomationInput(
                name="Deploy hook",
                prompt="Check the deploy",
                trigger_config=WebhookTriggerConfig(secret="s3cret"),
                enabled=True,
            ),
        )

        with pytest.raises(InvalidWebhookSecretError):
            await manager.dispatch_webhook("default", automation.id, {}, secret="guess")
        assert manager.list_runs("default") == []

    async def test_disabled_or_other_kind_not_found(
        self, manager: AutomationManager, make_automation: Callable[..., Automation]
    ) -> None:
        disabled = make_automation(trigger_config=WebhookTriggerConfig())
        manual = make_automation(trigger_config=ManualTriggerConfig(), enabled=True)

        for automation in (disabled, manual):
            with pytest.raises(AutomationNotFoundError):
                await manager.dispatch_webhook("default", automation.id, None)


class TestDeepLinkDispatch:
    async def test_runs_with_params(
        self, manager: AutomationManager, make_automation: Callable[..., Automation]
    ) -> None:
        automation = make_automation(trigger_config=DeepLinkTriggerConfig(), enabled=True)
        url = f"autopilot://automation/run/{automation.id}?workspace=default&topic=billing"

        run = await manager.dispatch_deep_link(url)

        assert run.triggered_by == "deep-link"
        assert run.trigger_context["url"] == url
        assert run.trigger_context["params"] == {"topic": "billing"}

    async def test_searches_all_workspaces(
        self, manager: AutomationManager, make_automation: Callable[..., Automation]
    ) -> None:
        automation = make_automation(trigger_config=DeepLinkTriggerConfig(), enabled=True)

        run = await manager.dispatch_deep_link(f"autopilot://automation/run/{automation.id}")

        assert run.automation_id == automation.id

    @pytest.mark.parametrize(
        "url",
        ["https://automation/run/abc", "autopilot://automation/edit/abc", "autopilot://other/run/abc"],
    )
    async def test_malformed_links_rejected(self, manager: AutomationManager, url: str) -> None:
        with pytest.raises(ValueError, match="Unsupported deep link"):
            await manager.dispatch_deep_link(url)

    async def test_non_deep_link_automation_not_found(
        self, manager: AutomationManager, make_automation: Callable[..., Automation]
    ) -> None:
        automation = make_automation(enabled=True)

        with pytest.raises(AutomationNotFoundError):
            await manager.dispatch_deep_link(f"autopilot://automation/run/{automation.id}")
