"""Configuration module for autopilot_library.

Public Interface:
    - AutopilotSettings: Settings model
    - WorkspaceConfig: Workspace entry
    - load_config: Load configuration
    - create_default_config: Create default config file
    - get_config_path: Get config file path
"""

from .loader import create_default_config
from .loader import get_config_path
from .loader import load_config
from .settings import AutopilotSettings
from .settings import WorkspaceConfig

__all__ = [
    "AutopilotSettings",
    "WorkspaceConfig",
    "load_config",
    "create_default_config",
    "get_config_path",
]
