"""Shared dependency factories for FastAPI endpoints."""

from fastapi import HTTPException
from fastapi import Request

from autopilot_library.automations.manager import AutomationManager


def get_automation_manager(request: Request) -> AutomationManager:
    """Get the automation manager created at startup.

    Raises:
        HTTPException: 503 if the daemon has not finished starting
    """
    manager = getattr(request.app.state, "automation_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Automation manager not available")
    return manager
