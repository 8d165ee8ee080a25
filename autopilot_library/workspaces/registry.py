"""Workspace lookup for automation storage roots."""

import logging
from pathlib import Path

from ..config.settings import AutopilotSettings
from ..config.settings import WorkspaceConfig
from ..storage.paths import get_state_dir

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_ID = "default"


class WorkspaceRegistry:
    """Resolves workspace ids (or names) to their root paths."""

    def __init__(self, workspaces: list[WorkspaceConfig]) -> None:
        self._workspaces: dict[str, WorkspaceConfig] = {}
        for workspace in workspaces:
            if workspace.id in self._workspaces:
                logger.warning(f"Duplicate workspace id {workspace.id!r}, keeping the first entry")
                continue
            self._workspaces[workspace.id] = workspace

    @classmethod
    def from_settings(cls, settings: AutopilotSettings) -> "WorkspaceRegistry":
        """Build from settings, falling back to a single workspace in the state dir."""
        workspaces = list(settings.workspaces)
        if not workspaces:
            root = get_state_dir() / "workspaces" / DEFAULT_WORKSPACE_ID
            root.mkdir(parents=True, exist_ok=True)
            workspaces = [WorkspaceConfig(id=DEFAULT_WORKSPACE_ID, name="Default", root_path=str(root))]
        return cls(workspaces)

    def get(self, id_or_name: str) -> WorkspaceConfig | None:
        """Find a workspace by id, then by name."""
        workspace = self._workspaces.get(id_or_name)
        if workspace is not None:
            return workspace
        for candidate in self._workspaces.values():
            if candidate.name == id_or_name:
                return candidate
        return None

    def root_path(self, id_or_name: str) -> Path | None:
        workspace = self.get(id_or_name)
        return Path(workspace.root_path) if workspace else None

    def list(self) -> list[WorkspaceConfig]:
        return list(self._workspaces.values())
