"""Automation run orchestration.

The AutomationManager is the only component that starts, bounds, tracks and
finalizes automation runs. Triggers reach it through the TriggerRegistry's
fire callback; API callers use ``execute`` directly.

Run lifecycle::

    pending --(work unit created, message delivered)--> running
    pending --(setup failed)--------------------------> failure
    running --(complete notification)-----------------> success
    running --(error notification | timeout)----------> failure
    running --(cancel | shutdown)---------------------> cancelled

Everything runs on one asyncio event loop. The admission check, run creation
and slot reservation happen without an intervening ``await``; after every
``await`` the setup path re-checks that its run still owns a slot, because a
cancel, a notification or shutdown may have finalized it meanwhile.
"""

import asyncio
import hmac
import json
import logging
import time
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC
from datetime import datetime
from pathlib import Path
from typing import Any
from typing import Protocol
from urllib.parse import parse_qsl
from urllib.parse import urlparse

from autopilot_library.automations.errors import AdmissionRejectedError
from autopilot_library.automations.errors import AutomationNotFoundError
from autopilot_library.automations.errors import InvalidRunTransitionError
from autopilot_library.automations.errors import InvalidWebhookSecretError
from autopilot_library.automations.errors import RunNotFoundError
from autopilot_library.automations.errors import WorkspaceNotFoundError
from autopilot_library.automations.store import AutomationStore
from autopilot_library.config.settings import AutopilotSettings
from autopilot_library.config.settings import WorkspaceConfig
from autopilot_library.execution.service import ExecutionNotification
from autopilot_library.execution.service import ExecutionService
from autopilot_library.execution.service import WorkPolicy
from autopilot_library.models.automations import Automation
from autopilot_library.models.automations import AutomationRun
from autopilot_library.models.automations import AutomationRunStatus
from autopilot_library.models.automations import CreateAutomationInput
from autopilot_library.models.automations import TriggerType
from autopilot_library.models.automations import UpdateAutomationInput
from autopilot_library.models.events import AutomationCreatedEvent
from autopilot_library.models.events import AutomationDeletedEvent
from autopilot_library.models.events import AutomationDisabledEvent
from autopilot_library.models.events import AutomationEnabledEvent
from autopilot_library.models.events import AutomationEvent
from autopilot_library.models.events import AutomationsChangedEvent
from autopilot_library.models.events import AutomationUpdatedEvent
from autopilot_library.models.events import RunCancelledEvent
from autopilot_library.models.events import RunCompletedEvent
from autopilot_library.models.events import RunFailedEvent
from autopilot_library.models.events import RunStartedEvent
from autopilot_library.triggers.host import HostEnvironment
from autopilot_library.triggers.registry import TriggerRegistry
from autopilot_library.workspaces.registry import WorkspaceRegistry

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Automation timed out"
SHUTDOWN_MESSAGE = "App shutting down"
INTERRUPTED_MESSAGE = "Interrupted before completion"

DEEP_LINK_SCHEME = "autopilot"

_TERMINAL_EVENTS = {
    "success": RunCompletedEvent,
    "failure": RunFailedEvent,
    "cancelled": RunCancelledEvent,
}


class EventSink(Protocol):
    """Receives automation lifecycle events."""

    def publish(self, event: AutomationEvent) -> None: ...


class NullEventSink:
    def publish(self, event: AutomationEvent) -> None:
        return None


@dataclass
class ActiveRun:
    """In-memory tracking for a run that holds an admission slot."""

    run_id: str
    automation_id: str
    workspace_id: str
    workspace_root: Path
    started_at: float
    work_unit_id: str | None = None
    timeout_handle: asyncio.TimerHandle | None = None


def compose_prompt(prompt: str, context: dict[str, Any] | None) -> str:
    """Append the trigger context to the automation prompt, if there is any."""
    if not context:
        return prompt
    rendered = json.dumps(context, indent=2, ensure_ascii=False, default=str)
    return f"{prompt}\n\n---\nTrigger context:\n{rendered}"


class AutomationManager:
    """Orchestrates automation runs and keeps triggers in sync with storage.

    Example:
        >>> manager = AutomationManager(store, execution, workspaces, settings, sink)
        >>> await manager.initialize()
        >>> run = await manager.execute("default", automation_id, "manual")
        >>> await manager.shutdown()
    """

    def __init__(
        self,
        store: AutomationStore,
        execution: ExecutionService,
        workspaces: WorkspaceRegistry,
        settings: AutopilotSettings,
        sink: EventSink | None = None,
        host: HostEnvironment | None = None,
    ) -> None:
        """Initialize manager.

        Args:
            store: Automation and run record persistence
            execution: Service that carries out agent work units
            workspaces: Workspace id to root path resolution
            settings: Admission bound and action defaults
            sink: Receiver for lifecycle events (default: discard)
            host: Host facilities for hotkey, lifecycle and clipboard triggers
        """
        self.store = store
        self.execution = execution
        self.workspaces = workspaces
        self.settings = settings
        self.sink = sink or NullEventSink()
        self.registry = TriggerRegistry(self._on_trigger_fire, host)

        self._active: dict[str, ActiveRun] = {}
        self._runs_by_work_unit: dict[str, str] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._initialized = False

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Subscribe to execution notifications and register enabled triggers.

        Runs left ``pending`` or ``running`` by a previous process are
        finalized as ``cancelled`` before any trigger can start new ones.
        """
        if self._initialized:
            return

        self.execution.add_listener(self._handle_notification)

        total_registered = 0
        workspaces = self.workspaces.list()
        for workspace in workspaces:
            root = Path(workspace.root_path)
            try:
                self.reconcile(root)
                for automation in self.store.list_automations(root, enabled=True):
                    self.registry.register(automation)
                    total_registered += 1
            except Exception as e:
                logger.error(f"Failed to load automations for workspace '{workspace.name}': {e}")

        self._initialized = True
        logger.info(
            f"Loaded triggers for {total_registered} enabled automation(s) across {len(workspaces)} workspace(s)"
        )

    def reconcile(self, workspace_root: Path) -> int:
        """Cancel persisted runs that no in-memory slot owns.

        Returns:
            Number of runs finalized
        """
        reconciled = 0
        for status in ("pending", "running"):
            for run in self.store.list_runs(workspace_root, status=status, limit=None):
                if run.id in self._active:
                    continue
                try:
                    updated = self.store.update_run(
                        workspace_root,
                        run.id,
                        status="cancelled",
                        completed_at=datetime.now(UTC),
                        error=INTERRUPTED_MESSAGE,
                    )
                except (RunNotFoundError, InvalidRunTransitionError) as e:
                    logger.warning(f"Could not reconcile run {run.id}: {e}")
                    continue
                self.store.update_after_run(workspace_root, run.automation_id, updated)
                reconciled += 1

        if reconciled:
            logger.warning(f"Reconciled {reconciled} interrupted run(s) in {workspace_root}")
        return reconciled

    async def shutdown(self) -> None:
        """Stop all triggers and cancel every active run."""
        logger.info(f"Shutting down automation manager ({len(self._active)} active run(s))")

        self.registry.unregister_all()

        work_unit_ids = [active.work_unit_id for active in self._active.values() if active.work_unit_id]
        for run_id in list(self._active):
            self._finalize(run_id, "cancelled", error=SHUTDOWN_MESSAGE)

        self._active.clear()
        self._runs_by_work_unit.clear()
        self.execution.remove_listener(self._handle_notification)

        for task in list(self._tasks):
            task.cancel()

        results = await asyncio.gather(
            *(self.execution.cancel(work_unit_id) for work_unit_id in work_unit_ids),
            return_exceptions=True,
        )
        for work_unit_id, result in zip(work_unit_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(f"Failed to cancel work unit {work_unit_id} on shutdown: {result}")

        self._initialized = False

    # --- Observability ---

    def active_run_count(self) -> int:
        return len(self._active)

    def is_automation_running(self, automation_id: str) -> bool:
        return any(active.automation_id == automation_id for active in self._active.values())

    # --- Execution ---

    def _require_workspace(self, workspace_id: str) -> WorkspaceConfig:
        workspace = self.workspaces.get(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(f"Workspace not found: {workspace_id}")
        return workspace

    def _policy_for(self, automation: Automation) -> WorkPolicy:
        action = automation.action_config
        return WorkPolicy(
            permission_mode=action.permission_mode or self.settings.default_permission_mode,
            model=action.model or self.settings.default_model,
            working_directory=action.working_directory or self.settings.default_working_directory,
            max_turns=action.max_turns or self.settings.default_max_turns,
            hidden=True,
        )

    def _owns_slot(self, active: ActiveRun) -> bool:
        return self._active.get(active.run_id) is active

    async def execute(
        self,
        workspace_id: str,
        automation_id: str,
        triggered_by: TriggerType,
        context: dict[str, Any] | None = None,
    ) -> AutomationRun:
        """Start a run for an automation.

        Returns the run once the message is delivered (``running``), or the
        persisted record if the run was finalized while setting up.

        Raises:
            WorkspaceNotFoundError: Unknown workspace
            AutomationNotFoundError: Unknown automation
            AdmissionRejectedError: Concurrency limit reached (no run is recorded)
            Exception: Whatever work unit setup raised (run recorded as failure)
        """
        workspace = self._require_workspace(workspace_id)
        root = Path(workspace.root_path)

        automation = self.store.get_automation(root, automation_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation not found: {automation_id}")

        limit = self.settings.max_concurrent_runs
        if len(self._active) >= limit:
            logger.warning(f"Rejected run of '{automation.name}': {len(self._active)}/{limit} runs active")
            raise AdmissionRejectedError(limit)

        logger.info(f"Executing automation '{automation.name}' ({automation.id}) triggered by {triggered_by}")

        run = self.store.create_run(root, automation.id, triggered_by, context or None)
        active = ActiveRun(
            run_id=run.id,
            automation_id=automation.id,
            workspace_id=workspace.id,
            workspace_root=root,
            started_at=time.monotonic(),
        )
        self._active[run.id] = active
        self._publish(RunStartedEvent(workspace_id=workspace.id, run=run))

        try:
            work_unit = await self.execution.create_work_unit(workspace.id, self._policy_for(automation))
            if not self._owns_slot(active):
                await self._abandon_work_unit(work_unit.id)
                return self._persisted_run(root, run)

            active.work_unit_id = work_unit.id
            self._runs_by_work_unit[work_unit.id] = run.id
            self.store.update_run(root, run.id, work_unit_id=work_unit.id)

            if automation.action_config.source_slugs:
                await self.execution.set_resource_scope(work_unit.id, automation.action_config.source_slugs)
                if not self._owns_slot(active):
                    return self._persisted_run(root, run)

            await self.execution.deliver_message(work_unit.id, compose_prompt(automation.prompt, context))
            if not self._owns_slot(active):
                return self._persisted_run(root, run)

            running = self.store.update_run(root, run.id, status="running")
        except asyncio.CancelledError:
            self._finalize(run.id, "cancelled")
            raise
        except Exception as e:
            if not self._owns_slot(active):
                logger.info(f"Run {run.id} setup ended after it was finalized: {e}")
                return self._persisted_run(root, run)

            logger.error(f"Run {run.id} failed to start: {e}")
            if active.work_unit_id:
                await self._abandon_work_unit(active.work_unit_id)
            self._finalize(run.id, "failure", error=str(e) or type(e).__name__)
            raise

        timeout_seconds = automation.action_config.timeout_seconds or self.settings.default_timeout_seconds
        active.timeout_handle = asyncio.get_running_loop().call_later(
            timeout_seconds, self._handle_timeout, run.id
        )

        logger.info(f"Run {run.id} started for '{automation.name}' (work unit: {work_unit.id})")
        return running

    def _persisted_run(self, root: Path, run: AutomationRun) -> AutomationRun:
        return self.store.get_run(root, run.id) or run

    async def _abandon_work_unit(self, work_unit_id: str) -> None:
        try:
            await self.execution.cancel(work_unit_id)
        except Exception as e:
            logger.warning(f"Failed to cancel work unit {work_unit_id}: {e}")

    async def cancel(self, workspace_id: str, run_id: str) -> bool:
        """Cancel an active run.

        Returns:
            True if the run was active and is now cancelled, False otherwise
        """
        active = self._active.get(run_id)
        if active is None:
            logger.warning(f"Cannot cancel run {run_id}: not actively running")
            return False

        workspace = self.workspaces.get(workspace_id)
        if workspace is None or workspace.id != active.workspace_id:
            logger.warning(f"Cannot cancel run {run_id}: not in workspace {workspace_id}")
            return False

        logger.info(f"Cancelling run {run_id}")
        work_unit_id = active.work_unit_id
        self._finalize(run_id, "cancelled")

        if work_unit_id:
            await self._abandon_work_unit(work_unit_id)
        return True

    # --- Completion tracking ---

    def _handle_notification(self, notification: ExecutionNotification) -> None:
        if notification.kind not in ("complete", "error"):
            return

        run_id = self._runs_by_work_unit.get(notification.work_unit_id)
        if run_id is None or run_id not in self._active:
            return

        if notification.kind == "complete":
            logger.info(f"Work unit {notification.work_unit_id} completed for run {run_id}")
            self._finalize(run_id, "success", summary=notification.summary)
        else:
            logger.error(f"Work unit {notification.work_unit_id} errored for run {run_id}: {notification.error}")
            self._finalize(run_id, "failure", error=notification.error or "Execution failed")

    def _handle_timeout(self, run_id: str) -> None:
        active = self._active.get(run_id)
        if active is None:
            return

        active.timeout_handle = None
        elapsed = time.monotonic() - active.started_at
        logger.warning(f"Run {run_id} timed out after {elapsed:.1f}s")

        if active.work_unit_id:
            self._spawn(self._abandon_work_unit(active.work_unit_id), name=f"cancel_{active.work_unit_id}")
        self._finalize(run_id, "failure", error=TIMEOUT_MESSAGE)

    def _finalize(
        self,
        run_id: str,
        status: AutomationRunStatus,
        error: str | None = None,
        summary: str | None = None,
    ) -> AutomationRun | None:
        """Move an active run to a terminal status. No-op if it is not active."""
        active = self._active.pop(run_id, None)
        if active is None:
            return None

        if active.timeout_handle is not None:
            active.timeout_handle.cancel()
            active.timeout_handle = None
        if active.work_unit_id:
            self._runs_by_work_unit.pop(active.work_unit_id, None)

        updates: dict[str, Any] = {"status": status, "completed_at": datetime.now(UTC), "error": error}
        if summary is not None:
            updates["summary"] = summary

        try:
            run = self.store.update_run(active.workspace_root, run_id, **updates)
        except (RunNotFoundError, InvalidRunTransitionError) as e:
            logger.warning(f"Could not finalize run {run_id}: {e}")
            return None

        self.store.update_after_run(active.workspace_root, active.automation_id, run)
        self._publish(_TERMINAL_EVENTS[status](workspace_id=active.workspace_id, run=run))
        self._publish_automations_changed(active.workspace_id, active.workspace_root)

        logger.info(f"Run {run_id} completed: {status}" + (f" ({error})" if error else ""))
        return run

    # --- Triggers ---

    def _on_trigger_fire(
        self,
        workspace_id: str,
        automation_id: str,
        triggered_by: TriggerType,
        context: dict[str, Any],
    ) -> None:
        self._spawn(
            self.execute(workspace_id, automation_id, triggered_by, context),
            name=f"automation_{automation_id}",
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, AdmissionRejectedError):
            logger.warning(f"Trigger-initiated execution skipped ({task.get_name()}): {error}")
        elif error is not None:
            logger.error(f"Trigger-initiated execution failed ({task.get_name()}): {error}")

    def refresh_trigger(self, workspace_id: str, automation_id: str) -> None:
        """Bring the registered trigger in line with the stored automation."""
        workspace = self.workspaces.get(workspace_id)
        if workspace is None:
            logger.warning(f"Cannot refresh trigger for {automation_id}: workspace {workspace_id} not found")
            return

        automation = self.store.get_automation(Path(workspace.root_path), automation_id)
        if automation is None or not automation.enabled:
            self.registry.unregister(automation_id)
            return
        self.registry.register(automation)

    # --- Inbound dispatch ---

    async def dispatch_webhook(
        self,
        workspace_id: str,
        automation_id: str,
        payload: Any,
        secret: str | None = None,
    ) -> AutomationRun:
        """Run an enabled webhook automation for an inbound request.

        Raises:
            AutomationNotFoundError: No enabled webhook automation with this id
            InvalidWebhookSecretError: The automation has a secret and it does not match
        """
        workspace = self._require_workspace(workspace_id)
        automation = self.store.get_automation(Path(workspace.root_path), automation_id)
        if automation is None or automation.trigger_config.type != "webhook" or not automation.enabled:
            raise AutomationNotFoundError(f"No enabled webhook automation: {automation_id}")

        expected = automation.trigger_config.secret
        if expected and not hmac.compare_digest(expected.encode(), (secret or "").encode()):
            raise InvalidWebhookSecretError("Invalid webhook secret")

        context = {"payload": payload, "receivedAt": datetime.now(UTC).isoformat()}
        return await self.execute(workspace.id, automation.id, "webhook", context)

    async def dispatch_deep_link(self, url: str) -> AutomationRun:
        """Run the deep-link automation addressed by ``autopilot://automation/run/{id}``.

        An optional ``workspace`` query parameter narrows the lookup; other
        query parameters are passed through in the trigger context.

        Raises:
            ValueError: Malformed deep link
            AutomationNotFoundError: No enabled deep-link automation with this id
        """
        parsed = urlparse(url)
        parts = [part for part in parsed.path.split("/") if part]
        if parsed.scheme != DEEP_LINK_SCHEME or parsed.netloc != "automation" or len(parts) != 2 or parts[0] != "run":
            raise ValueError(f"Unsupported deep link: {url}")

        automation_id = parts[1]
        params = dict(parse_qsl(parsed.query))
        workspace_hint = params.pop("workspace", None)

        if workspace_hint is not None:
            candidates = [self._require_workspace(workspace_hint)]
        else:
            candidates = self.workspaces.list()

        for workspace in candidates:
            automation = self.store.get_automation(Path(workspace.root_path), automation_id)
            if automation is None:
                continue
            if automation.trigger_config.type != "deep-link" or not automation.enabled:
                break
            context = {"url": url, "params": params, "receivedAt": datetime.now(UTC).isoformat()}
            return await self.execute(workspace.id, automation.id, "deep-link", context)

        raise AutomationNotFoundError(f"No enabled deep-link automation: {automation_id}")

    # --- Automation management ---

    def _with_next_run(self, automation: Automation) -> Automation:
        if automation.trigger_config.type != "schedule":
            return automation
        return automation.model_copy(update={"next_run_at": self.registry.next_run_at(automation.id)})

    def list_automations(self, workspace_id: str, enabled: bool | None = None) -> list[Automation]:
        workspace = self._require_workspace(workspace_id)
        automations = self.store.list_automations(Path(workspace.root_path), enabled=enabled)
        return [self._with_next_run(a) for a in automations]

    def get_automation(self, workspace_id: str, automation_id: str) -> Automation:
        """Get automation by ID.

        Raises:
            AutomationNotFoundError: If automation not found
        """
        workspace = self._require_workspace(workspace_id)
        automation = self.store.get_automation(Path(workspace.root_path), automation_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation not found: {automation_id}")
        return self._with_next_run(automation)

    def create_automation(self, workspace_id: str, data: CreateAutomationInput) -> Automation:
        workspace = self._require_workspace(workspace_id)
        automation = self.store.create_automation(Path(workspace.root_path), workspace.id, data)
        self._publish(AutomationCreatedEvent(workspace_id=workspace.id, automation=automation))
        if automation.enabled:
            self.registry.register(automation)
        return automation

    def update_automation(self, workspace_id: str, automation_id: str, data: UpdateAutomationInput) -> Automation:
        workspace = self._require_workspace(workspace_id)
        automation = self.store.update_automation(Path(workspace.root_path), automation_id, data)
        self._publish(AutomationUpdatedEvent(workspace_id=workspace.id, automation=automation))
        self.refresh_trigger(workspace.id, automation_id)
        return automation

    def set_enabled(self, workspace_id: str, automation_id: str, enabled: bool) -> Automation:
        workspace = self._require_workspace(workspace_id)
        automation = self.store.set_enabled(Path(workspace.root_path), automation_id, enabled)
        event_type = AutomationEnabledEvent if enabled else AutomationDisabledEvent
        self._publish(event_type(workspace_id=workspace.id, automation=automation))
        self.refresh_trigger(workspace.id, automation_id)
        return automation

    def duplicate_automation(self, workspace_id: str, automation_id: str) -> Automation:
        workspace = self._require_workspace(workspace_id)
        automation = self.store.duplicate_automation(Path(workspace.root_path), automation_id)
        self._publish(AutomationCreatedEvent(workspace_id=workspace.id, automation=automation))
        return automation

    def delete_automation(self, workspace_id: str, automation_id: str) -> bool:
        """Delete an automation, its trigger and its run history.

        Active runs of the automation keep their slot until they finish.
        """
        workspace = self._require_workspace(workspace_id)
        self.registry.unregister(automation_id)
        deleted = self.store.delete_automation(Path(workspace.root_path), automation_id)
        if deleted:
            self._publish(AutomationDeletedEvent(workspace_id=workspace.id, automation_id=automation_id))
        return deleted

    def list_runs(
        self,
        workspace_id: str,
        automation_id: str | None = None,
        status: AutomationRunStatus | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[AutomationRun]:
        workspace = self._require_workspace(workspace_id)
        return self.store.list_runs(Path(workspace.root_path), automation_id, status, limit, offset)

    def get_run(self, workspace_id: str, run_id: str) -> AutomationRun:
        """Get run by ID.

        Raises:
            RunNotFoundError: If run not found
        """
        workspace = self._require_workspace(workspace_id)
        run = self.store.get_run(Path(workspace.root_path), run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    # --- Events ---

    def _publish(self, event: AutomationEvent) -> None:
        try:
            self.sink.publish(event)
        except Exception as e:
            logger.error(f"Failed to publish {event.event_type}: {e}")

    def _publish_automations_changed(self, workspace_id: str, workspace_root: Path) -> None:
        automations = self.store.list_automations(workspace_root)
        self._publish(AutomationsChangedEvent(workspace_id=workspace_id, automations=automations))
