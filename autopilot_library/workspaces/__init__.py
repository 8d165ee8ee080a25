"""Workspace resolution.

Public Interface:
    - WorkspaceRegistry: Resolves workspace ids to root paths
"""

from .registry import DEFAULT_WORKSPACE_ID
from .registry import WorkspaceRegistry

__all__ = ["DEFAULT_WORKSPACE_ID", "WorkspaceRegistry"]
