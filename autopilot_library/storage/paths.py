"""Path resolution for autopilot storage locations.

This module provides path resolution based on AUTOPILOT_HOME environment variable,
following XDG-like directory structure within that root.

Contract:
- Inputs: Environment variables (AUTOPILOT_HOME and per-directory overrides)
- Outputs: Resolved Path objects
- Side Effects: Creates directories if they don't exist
"""

import os
from pathlib import Path


def get_home_dir() -> Path:
    """Get AUTOPILOT_HOME from environment.

    Returns:
        Path to root directory (default: .autopilot)
    """
    root = os.environ.get("AUTOPILOT_HOME", ".autopilot")
    return Path(root).expanduser().resolve()


def _resolve_dir(default: Path, env_var: str) -> Path:
    directory = default
    env_override: str | None = os.environ.get(env_var)
    if env_override is not None:
        directory = Path(env_override).expanduser().resolve()

    directory.mkdir(parents=True, exist_ok=True)
    return directory


def get_config_dir() -> Path:
    """Get configuration directory.

    Returns:
        Path to config directory ($AUTOPILOT_HOME/config)
    """
    return _resolve_dir(get_home_dir() / "config", "AUTOPILOT_CONFIG_DIR")


def get_state_dir() -> Path:
    """Get state directory.

    Holds the default workspace root when no workspaces are configured.

    Returns:
        Path to state directory ($AUTOPILOT_HOME/state)
    """
    return _resolve_dir(get_home_dir() / "state", "AUTOPILOT_STATE_DIR")


def get_log_dir() -> Path:
    """Get log directory.

    Returns:
        Path to log directory ($AUTOPILOT_HOME/logs)

    Environment Variables:
        AUTOPILOT_LOG_DIR: Override log directory location
    """
    return _resolve_dir(get_home_dir() / "logs", "AUTOPILOT_LOG_DIR")
