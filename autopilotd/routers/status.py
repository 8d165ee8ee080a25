"""Daemon status endpoint."""

import os

from fastapi import APIRouter
from fastapi import Depends
from pydantic import BaseModel

from autopilot_library.automations.manager import AutomationManager
from autopilotd import __version__
from autopilotd.dependencies import get_automation_manager

router = APIRouter(prefix="/api/v1/status", tags=["status"])


class StatusResponse(BaseModel):
    version: str
    pid: int
    active_runs: int
    max_concurrent_runs: int
    registered_triggers: int
    workspaces: list[str]


@router.get("", response_model=StatusResponse)
async def get_status(manager: AutomationManager = Depends(get_automation_manager)) -> StatusResponse:
    return StatusResponse(
        version=__version__,
        pid=os.getpid(),
        active_runs=manager.active_run_count(),
        max_concurrent_runs=manager.settings.max_concurrent_runs,
        registered_triggers=manager.registry.active_count(),
        workspaces=[workspace.id for workspace in manager.workspaces.list()],
    )
