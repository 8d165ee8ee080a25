"""Automation and run record persistence."""

import json
import logging
import uuid
from datetime import UTC
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError

from autopilot_library.automations.errors import AutomationConfigUnreadableError
from autopilot_library.automations.errors import AutomationNotFoundError
from autopilot_library.automations.errors import InvalidRunTransitionError
from autopilot_library.automations.errors import RunNotFoundError
from autopilot_library.models.automations import Automation
from autopilot_library.models.automations import AutomationRun
from autopilot_library.models.automations import AutomationRunStatus
from autopilot_library.models.automations import CreateAutomationInput
from autopilot_library.models.automations import TriggerType
from autopilot_library.models.automations import UpdateAutomationInput

logger = logging.getLogger(__name__)

_automation_list_adapter: TypeAdapter[list[Automation]] = TypeAdapter(list[Automation])

_RUN_UPDATABLE_FIELDS = frozenset({"status", "completed_at", "work_unit_id", "summary", "error"})


def _write_atomic(path: Path, content: str) -> None:
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(content, encoding="utf-8")
    tmp_path.replace(path)


class AutomationStore:
    """Persists automations and their run history per workspace.

    Every operation is scoped by the workspace root path. Writes go through
    a temporary file and a rename so readers never see a partial file.

    Storage structure:
        {workspace_root}/automations/
            config.json           # List of Automation records
            runs/
                {run_id}.json     # One AutomationRun per file

    Run records and the owning automation's aggregate fields live in
    different files and are written one after the other. A crash between the
    two writes leaves ``run_count``/``last_status`` behind the run history
    until the next completed run; nothing repairs it automatically.
    """

    # --- Paths ---

    @staticmethod
    def automations_dir(workspace_root: Path) -> Path:
        return Path(workspace_root) / "automations"

    def _config_path(self, workspace_root: Path) -> Path:
        return self.automations_dir(workspace_root) / "config.json"

    def _runs_dir(self, workspace_root: Path) -> Path:
        return self.automations_dir(workspace_root) / "runs"

    def _run_path(self, workspace_root: Path, run_id: str) -> Path:
        return self._runs_dir(workspace_root) / f"{run_id}.json"

    def _ensure_dirs(self, workspace_root: Path) -> None:
        self._runs_dir(workspace_root).mkdir(parents=True, exist_ok=True)

    # --- Automation Management ---

    def _load_records(self, workspace_root: Path) -> tuple[list[Automation], list[Any]]:
        """Read config.json, validating each record on its own.

        Returns:
            (valid automations, raw records that failed validation)

        Raises:
            AutomationConfigUnreadableError: If the file is not a JSON list
        """
        config_path = self._config_path(workspace_root)
        if not config_path.exists():
            return [], []

        try:
            records = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise AutomationConfigUnreadableError(f"Cannot read automations from {config_path}: {e}") from e
        if not isinstance(records, list):
            raise AutomationConfigUnreadableError(f"Expected a list of automations in {config_path}")

        automations: list[Automation] = []
        invalid: list[Any] = []
        for record in records:
            try:
                automations.append(Automation.model_validate(record))
            except ValidationError as e:
                record_id = record.get("id") if isinstance(record, dict) else None
                logger.warning(f"Skipping invalid automation record {record_id!r} in {config_path}: {e}")
                invalid.append(record)
        return automations, invalid

    def list_automations(self, workspace_root: Path, enabled: bool | None = None) -> list[Automation]:
        """Load all automations for a workspace.

        Records that fail validation are skipped; they stay on disk untouched.

        Args:
            workspace_root: Workspace root path
            enabled: Filter by enabled status (optional)

        Returns:
            List of Automation records (empty if none or unreadable)
        """
        try:
            automations, _ = self._load_records(workspace_root)
        except AutomationConfigUnreadableError as e:
            logger.error(str(e))
            return []

        if enabled is not None:
            automations = [a for a in automations if a.enabled == enabled]
        return automations

    def _save_automations(self, workspace_root: Path, automations: list[Automation], invalid: list[Any]) -> None:
        """Write automations back, followed by the raw records that failed validation."""
        self._ensure_dirs(workspace_root)
        records = _automation_list_adapter.dump_python(automations, mode="json", by_alias=True)
        content = json.dumps(records + invalid, indent=2)
        _write_atomic(self._config_path(workspace_root), content)

    def get_automation(self, workspace_root: Path, automation_id: str) -> Automation | None:
        """Get automation by ID.

        Returns:
            Automation if found, None otherwise
        """
        for automation in self.list_automations(workspace_root):
            if automation.id == automation_id:
                return automation
        return None

    def create_automation(
        self,
        workspace_root: Path,
        workspace_id: str,
        data: CreateAutomationInput,
    ) -> Automation:
        """Create new automation.

        Automations are disabled unless ``data.enabled`` opts in.

        Side Effects:
            Rewrites {workspace_root}/automations/config.json

        Raises:
            AutomationConfigUnreadableError: If the existing file cannot be parsed
        """
        automations, invalid = self._load_records(workspace_root)
        now = datetime.now(UTC)

        automation = Automation(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            name=data.name,
            prompt=data.prompt,
            trigger_config=data.trigger_config,
            action_config=data.action_config,
            enabled=data.enabled,
            created_at=now,
            updated_at=now,
        )

        automations.append(automation)
        self._save_automations(workspace_root, automations, invalid)

        logger.info(f"Created automation {automation.id} ('{automation.name}') in {workspace_root}")
        return automation

    def update_automation(
        self,
        workspace_root: Path,
        automation_id: str,
        data: UpdateAutomationInput,
    ) -> Automation:
        """Update automation fields.

        ``trigger_config`` and ``action_config`` replace the stored values
        whole; nothing is merged from the previous configuration.

        Raises:
            AutomationNotFoundError: If automation not found
        """
        automations, invalid = self._load_records(workspace_root)
        for index, existing in enumerate(automations):
            if existing.id == automation_id:
                break
        else:
            raise AutomationNotFoundError(f"Automation not found: {automation_id}")

        changes: dict[str, Any] = {
            field: getattr(data, field) for field in data.model_fields_set if getattr(data, field) is not None
        }
        changes["updated_at"] = datetime.now(UTC)

        updated = existing.model_copy(update=changes)
        # Re-validate so a replaced trigger config is checked like a new one
        updated = Automation.model_validate(updated.model_dump())

        automations[index] = updated
        self._save_automations(workspace_root, automations, invalid)

        logger.info(f"Updated automation {automation_id}")
        return updated

    def set_enabled(self, workspace_root: Path, automation_id: str, enabled: bool) -> Automation:
        return self.update_automation(workspace_root, automation_id, UpdateAutomationInput(enabled=enabled))

    def duplicate_automation(self, workspace_root: Path, automation_id: str) -> Automation:
        """Copy an automation under a new id. Copies start disabled.

        Raises:
            AutomationNotFoundError: If automation not found
        """
        original = self.get_automation(workspace_root, automation_id)
        if original is None:
            raise AutomationNotFoundError(f"Automation not found: {automation_id}")

        return self.create_automation(
            workspace_root,
            original.workspace_id,
            CreateAutomationInput(
                name=f"{original.name} (copy)",
                prompt=original.prompt,
                trigger_config=original.trigger_config,
                action_config=original.action_config,
                enabled=False,
            ),
        )

    def delete_automation(self, workspace_root: Path, automation_id: str) -> bool:
        """Delete automation and its run history.

        Returns:
            True if deleted, False if not found
        """
        automations, invalid = self._load_records(workspace_root)
        remaining = [a for a in automations if a.id != automation_id]
        if len(remaining) == len(automations):
            return False

        self._save_automations(workspace_root, remaining, invalid)

        for run in self.list_runs(workspace_root, automation_id, limit=None):
            self.delete_run(workspace_root, run.id)

        logger.info(f"Deleted automation {automation_id}")
        return True

    def update_after_run(self, workspace_root: Path, automation_id: str, run: AutomationRun) -> Automation | None:
        """Fold a run outcome into the automation's aggregate fields.

        ``last_status`` follows success/failure/running; a cancelled run
        leaves it unchanged. ``run_count`` always increments.

        Returns:
            Updated Automation, or None if it was deleted meanwhile or the
            automation file is unreadable
        """
        try:
            automations, invalid = self._load_records(workspace_root)
        except AutomationConfigUnreadableError as e:
            logger.error(f"Cannot update aggregates for automation {automation_id}: {e}")
            return None
        for index, automation in enumerate(automations):
            if automation.id == automation_id:
                break
        else:
            logger.warning(f"Cannot update aggregates for missing automation {automation_id}")
            return None

        last_status = automation.last_status
        if run.status in ("success", "failure", "running"):
            last_status = run.status

        updated = automation.model_copy(
            update={
                "last_run_at": run.completed_at or run.started_at,
                "last_status": last_status,
                "run_count": automation.run_count + 1,
                "updated_at": datetime.now(UTC),
            }
        )
        automations[index] = updated
        self._save_automations(workspace_root, automations, invalid)
        return updated

    # --- Run History ---

    def _save_run(self, workspace_root: Path, run: AutomationRun) -> None:
        self._ensure_dirs(workspace_root)
        _write_atomic(self._run_path(workspace_root, run.id), run.to_json())

    def create_run(
        self,
        workspace_root: Path,
        automation_id: str,
        triggered_by: TriggerType,
        trigger_context: dict[str, Any] | None = None,
    ) -> AutomationRun:
        """Create a new run record in ``pending`` status."""
        run = AutomationRun(
            id=str(uuid.uuid4()),
            automation_id=automation_id,
            status="pending",
            started_at=datetime.now(UTC),
            triggered_by=triggered_by,
            trigger_context=trigger_context,
        )
        self._save_run(workspace_root, run)
        return run

    def get_run(self, workspace_root: Path, run_id: str) -> AutomationRun | None:
        run_path = self._run_path(workspace_root, run_id)
        if not run_path.exists():
            return None

        try:
            return AutomationRun.model_validate(json.loads(run_path.read_text(encoding="utf-8")))
        except Exception as e:
            logger.error(f"Failed to load run {run_id}: {e}")
            return None

    def update_run(self, workspace_root: Path, run_id: str, **updates: Any) -> AutomationRun:
        """Update a run's status and metadata.

        Args:
            workspace_root: Workspace root path
            run_id: Run to update
            **updates: status, completed_at, work_unit_id, summary, error

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidRunTransitionError: If the run is already terminal
        """
        unknown = set(updates) - _RUN_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Run fields cannot be updated: {sorted(unknown)}")

        run = self.get_run(workspace_root, run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        if run.is_terminal:
            raise InvalidRunTransitionError(f"Run {run_id} is already {run.status}")

        updated = AutomationRun.model_validate({**run.model_dump(), **updates})
        self._save_run(workspace_root, updated)
        return updated

    def list_runs(
        self,
        workspace_root: Path,
        automation_id: str | None = None,
        status: AutomationRunStatus | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[AutomationRun]:
        """List run records, newest first.

        Args:
            workspace_root: Workspace root path
            automation_id: Filter by automation (optional, None = all)
            status: Filter by status (optional)
            limit: Maximum number of records (None = no limit)
            offset: Number of records to skip
        """
        runs_dir = self._runs_dir(workspace_root)
        if not runs_dir.exists():
            return []

        runs = []
        for run_path in runs_dir.glob("*.json"):
            try:
                run = AutomationRun.model_validate(json.loads(run_path.read_text(encoding="utf-8")))
            except Exception as e:
                logger.warning(f"Skipping malformed run file {run_path.name}: {e}")
                continue

            if automation_id is not None and run.automation_id != automation_id:
                continue
            if status is not None and run.status != status:
                continue
            runs.append(run)

        runs.sort(key=lambda r: r.started_at, reverse=True)

        if limit is None:
            return runs[offset:]
        return runs[offset : offset + limit]

    def delete_run(self, workspace_root: Path, run_id: str) -> bool:
        run_path = self._run_path(workspace_root, run_id)
        if not run_path.exists():
            return False
        run_path.unlink()
        return True
