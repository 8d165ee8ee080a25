"""Configuration loading for the autopilot daemon.

This module handles loading configuration from YAML files and environment
variables.

Contract:
- Inputs: Config file paths, environment variables
- Outputs: AutopilotSettings objects
- Side Effects: Creates default config file if missing
"""

import logging
import os
from pathlib import Path

import yaml

from ..storage.paths import get_config_dir
from .settings import AutopilotSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = """# autopilot daemon configuration

# Server settings
host: "127.0.0.1"
port: 8421
log_level: "info"
cors_origins:
  - "http://localhost:5173"

# Automation engine
max_concurrent_runs: 2
default_timeout_seconds: 300
default_max_turns: 15
default_model: "sonnet"
default_permission_mode: "safe"

# Command used to run agent work units. Placeholders: {model}, {permission_mode}, {max_turns}
# agent_command: ["claude", "--print", "--model", "{model}", "--max-turns", "{max_turns}"]

# Workspaces hold automations under <root_path>/automations
# workspaces:
#   - id: "default"
#     name: "Default"
#     root_path: "~/autopilot"
"""


def get_config_path() -> Path:
    """Get path to config file.

    Returns:
        Path to autopilot.yaml in config directory
    """
    return get_config_dir() / "autopilot.yaml"


def create_default_config(config_path: Path | None = None) -> None:
    """Create default config file if it doesn't exist."""
    if config_path is None:
        config_path = get_config_path()

    if config_path.exists():
        logger.debug(f"Config file already exists: {config_path}")
        return

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG, encoding="utf-8")
    logger.info(f"Created default config: {config_path}")


def load_config(config_path: Path | None = None) -> AutopilotSettings:
    """Load configuration from YAML and environment.

    Environment variables take precedence over YAML settings.
    Variables should be prefixed with AUTOPILOT_ (e.g., AUTOPILOT_MAX_CONCURRENT_RUNS).

    Args:
        config_path: Optional config file path (default: autopilot.yaml in config dir)

    Returns:
        Validated settings

    Example:
        >>> settings = load_config()
        >>> assert settings.max_concurrent_runs >= 1
    """
    if config_path is None:
        config_path = get_config_path()

    if not config_path.exists():
        create_default_config(config_path)

    yaml_settings = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                yaml_settings = yaml.safe_load(f) or {}
            logger.debug(f"Loaded config from {config_path}")
        except Exception as e:
            logger.warning(f"Failed to load config from {config_path}: {e}")
            logger.info("Using default settings and environment variables")

    # Precedence: defaults < YAML < env vars. Drop YAML keys that have an env override.
    filtered_yaml = {}
    for key, value in yaml_settings.items():
        env_key = f"AUTOPILOT_{key.upper()}"
        if env_key not in os.environ:
            filtered_yaml[key] = value

    settings = AutopilotSettings(**filtered_yaml)

    logger.info(
        f"Configuration loaded: max_concurrent_runs={settings.max_concurrent_runs}, "
        f"workspaces={len(settings.workspaces)}"
    )

    return settings
