"""Settings models for the autopilot daemon.

Contract:
- Inputs: Environment variables, YAML files
- Outputs: Validated settings objects
- Side Effects: None (read-only)
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class WorkspaceConfig(BaseModel):
    """A workspace whose automations live under ``root_path/automations``."""

    id: str
    name: str
    root_path: str

    @field_validator("root_path")
    @classmethod
    def expand_root_path(cls, v: str) -> str:
        return str(Path(v).expanduser().resolve())


class AutopilotSettings(BaseSettings):
    """Configuration for the autopilot daemon and automation engine.

    Attributes:
        host: Listen address (default: 127.0.0.1)
        port: Listen port (default: 8421)
        log_level: Logging level (default: info)
        cors_origins: Origins allowed to call the HTTP API
        max_concurrent_runs: Admission bound across all workspaces (default: 2)
        default_timeout_seconds: Run timeout when the automation sets none (default: 300)
        default_max_turns: Agent turn cap when the automation sets none (default: 15)
        default_model: Model when the automation sets none (default: sonnet)
        default_permission_mode: Permission mode when the automation sets none (default: safe)
        default_working_directory: Working directory when the automation sets none
        agent_command: argv template for the command execution service
        workspaces: Configured workspaces

    Example:
        >>> settings = AutopilotSettings()
        >>> assert settings.max_concurrent_runs == 2
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = Field(default=8421, ge=1024, le=65535)
    log_level: str = "info"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    max_concurrent_runs: int = Field(default=2, ge=1)
    default_timeout_seconds: int = Field(default=300, gt=0)
    default_max_turns: int = Field(default=15, gt=0)
    default_model: str = "sonnet"
    default_permission_mode: Literal["safe", "ask", "allow-all"] = "safe"
    default_working_directory: str | None = None

    agent_command: list[str] = Field(
        default_factory=lambda: [
            "claude",
            "--print",
            "--model",
            "{model}",
            "--max-turns",
            "{max_turns}",
        ]
    )

    workspaces: list[WorkspaceConfig] = Field(default_factory=list)
