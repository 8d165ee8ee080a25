"""Automation API endpoints.

Manages automation lifecycle:
- Create/update/delete/duplicate automations
- Enable/disable triggers
- Start (manual run) and cancel runs
- Query run history
"""

import logging
from typing import Annotated
from typing import Any

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Query
from pydantic import BaseModel
from pydantic import Field as PydanticField

from autopilot_library.automations.manager import AutomationManager
from autopilot_library.models.automations import Automation
from autopilot_library.models.automations import AutomationRun
from autopilot_library.models.automations import AutomationRunStatus
from autopilot_library.models.automations import CreateAutomationInput
from autopilot_library.models.automations import UpdateAutomationInput
from autopilotd.dependencies import get_automation_manager

from .errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/workspaces/{workspace_id}/automations", tags=["automations"])

Manager = Annotated[AutomationManager, Depends(get_automation_manager)]


# --- Request/Response Models ---


class AutomationResponse(BaseModel):
    automation: Automation = PydanticField(..., description="Complete automation data")


class AutomationList(BaseModel):
    automations: list[Automation] = PydanticField(..., description="List of automations")
    total: int = PydanticField(..., description="Total count of automations matching filters")


class RunRequest(BaseModel):
    """Request model for a manual run."""

    context: dict[str, Any] | None = PydanticField(None, description="Trigger context appended to the prompt")


class RunResponse(BaseModel):
    run: AutomationRun = PydanticField(..., description="Run record")


class RunList(BaseModel):
    runs: list[AutomationRun] = PydanticField(..., description="Run records, newest first")
    total: int = PydanticField(..., description="Number of records returned")


class CancelResponse(BaseModel):
    cancelled: bool = PydanticField(..., description="False if the run was not active")


# --- Lifecycle Endpoints ---


@router.post("", status_code=201, response_model=AutomationResponse)
async def create_automation(
    workspace_id: str,
    automation: CreateAutomationInput,
    manager: Manager,
) -> AutomationResponse:
    """Create new automation in a workspace.

    The trigger is registered immediately when ``enabled`` is true.

    Raises:
        HTTPException:
            - 400 if validation fails
            - 404 if workspace not found
            - 500 for other errors

    Example:
        ```json
        {
            "name": "Morning briefing",
            "prompt": "Summarize my unread mail",
            "triggerConfig": {"type": "schedule", "cron": "0 9 * * 1-5"},
            "enabled": true
        }
        ```
    """
    try:
        created = manager.create_automation(workspace_id, automation)
        return AutomationResponse(automation=created)
    except Exception as exc:
        raise to_http_exception(exc, "create automation") from exc


@router.get("", response_model=AutomationList)
async def list_automations(
    workspace_id: str,
    manager: Manager,
    enabled: bool | None = Query(None, description="Filter by enabled status"),
    limit: int = Query(50, ge=1, le=100, description="Maximum results to return"),
    offset: int = Query(0, ge=0, description="Number of results to skip"),
) -> AutomationList:
    """List automations for a workspace with optional filters.

    Example:
        ```
        GET /api/v1/workspaces/default/automations?enabled=true&limit=10
        ```
    """
    try:
        all_automations = manager.list_automations(workspace_id, enabled=enabled)
    except Exception as exc:
        raise to_http_exception(exc, "list automations") from exc

    total = len(all_automations)
    return AutomationList(automations=all_automations[offset : offset + limit], total=total)


# --- Run Endpoints (declared before /{automation_id} routes) ---


@router.get("/runs", response_model=RunList)
async def list_workspace_runs(
    workspace_id: str,
    manager: Manager,
    status: AutomationRunStatus | None = Query(None, description="Filter by run status"),
    limit: int = Query(50, ge=1, le=500, description="Maximum results to return"),
    offset: int = Query(0, ge=0, description="Number of results to skip"),
) -> RunList:
    """List runs of every automation in the workspace."""
    try:
        runs = manager.list_runs(workspace_id, status=status, limit=limit, offset=offset)
    except Exception as exc:
        raise to_http_exception(exc, "list runs") from exc
    return RunList(runs=runs, total=len(runs))


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(workspace_id: str, run_id: str, manager: Manager) -> RunResponse:
    try:
        return RunResponse(run=manager.get_run(workspace_id, run_id))
    except Exception as exc:
        raise to_http_exception(exc, f"get run {run_id}") from exc


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(workspace_id: str, run_id: str, manager: Manager) -> CancelResponse:
    """Cancel an active run.

    Returns ``cancelled: false`` when the run is not currently active
    (already finished, or unknown).
    """
    try:
        cancelled = await manager.cancel(workspace_id, run_id)
    except Exception as exc:
        raise to_http_exception(exc, f"cancel run {run_id}") from exc
    return CancelResponse(cancelled=cancelled)


# --- Single Automation Endpoints ---


@router.get("/{automation_id}", response_model=AutomationResponse)
async def get_automation(workspace_id: str, automation_id: str, manager: Manager) -> AutomationResponse:
    try:
        return AutomationResponse(automation=manager.get_automation(workspace_id, automation_id))
    except Exception as exc:
        raise to_http_exception(exc, f"get automation {automation_id}") from exc


@router.patch("/{automation_id}", response_model=AutomationResponse)
async def update_automation(
    workspace_id: str,
    automation_id: str,
    update: UpdateAutomationInput,
    manager: Manager,
) -> AutomationResponse:
    """Update automation fields.

    ``triggerConfig`` and ``actionConfig`` replace the stored values whole.
    The trigger is re-registered to match the result.

    Raises:
        HTTPException:
            - 400 if validation fails
            - 404 if workspace or automation not found
            - 500 for other errors
    """
    try:
        if not update.model_fields_set:
            return AutomationResponse(automation=manager.get_automation(workspace_id, automation_id))
        updated = manager.update_automation(workspace_id, automation_id, update)
        return AutomationResponse(automation=updated)
    except Exception as exc:
        raise to_http_exception(exc, f"update automation {automation_id}") from exc


@router.delete("/{automation_id}", status_code=204)
async def delete_automation(workspace_id: str, automation_id: str, manager: Manager) -> None:
    """Delete automation and its run history. Cannot be undone."""
    try:
        deleted = manager.delete_automation(workspace_id, automation_id)
    except Exception as exc:
        raise to_http_exception(exc, f"delete automation {automation_id}") from exc

    if not deleted:
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")


@router.post("/{automation_id}/enable", response_model=AutomationResponse)
async def enable_automation(workspace_id: str, automation_id: str, manager: Manager) -> AutomationResponse:
    try:
        return AutomationResponse(automation=manager.set_enabled(workspace_id, automation_id, True))
    except Exception as exc:
        raise to_http_exception(exc, f"enable automation {automation_id}") from exc


@router.post("/{automation_id}/disable", response_model=AutomationResponse)
async def disable_automation(workspace_id: str, automation_id: str, manager: Manager) -> AutomationResponse:
    try:
        return AutomationResponse(automation=manager.set_enabled(workspace_id, automation_id, False))
    except Exception as exc:
        raise to_http_exception(exc, f"disable automation {automation_id}") from exc


@router.post("/{automation_id}/duplicate", status_code=201, response_model=AutomationResponse)
async def duplicate_automation(workspace_id: str, automation_id: str, manager: Manager) -> AutomationResponse:
    """Copy an automation. The copy is named "<name> (copy)" and starts disabled."""
    try:
        return AutomationResponse(automation=manager.duplicate_automation(workspace_id, automation_id))
    except Exception as exc:
        raise to_http_exception(exc, f"duplicate automation {automation_id}") from exc


@router.post("/{automation_id}/run", status_code=202, response_model=RunResponse)
async def run_automation(
    workspace_id: str,
    automation_id: str,
    manager: Manager,
    request: RunRequest | None = None,
) -> RunResponse:
    """Start a manual run.

    Returns as soon as the agent received the prompt; follow completion on
    the event stream or by polling the run.

    Raises:
        HTTPException:
            - 404 if workspace or automation not found
            - 429 if the concurrent run limit is reached
            - 400 if the working directory does not exist
            - 500 if the run failed to start
    """
    context = request.context if request else None
    try:
        run = await manager.execute(workspace_id, automation_id, "manual", context)
    except Exception as exc:
        raise to_http_exception(exc, f"run automation {automation_id}") from exc

    logger.info(f"Manual run {run.id} started for automation {automation_id}")
    return RunResponse(run=run)


@router.get("/{automation_id}/runs", response_model=RunList)
async def list_automation_runs(
    workspace_id: str,
    automation_id: str,
    manager: Manager,
    status: AutomationRunStatus | None = Query(None, description="Filter by run status"),
    limit: int = Query(50, ge=1, le=500, description="Maximum results to return"),
    offset: int = Query(0, ge=0, description="Number of results to skip"),
) -> RunList:
    """Get run history for an automation, newest first."""
    try:
        manager.get_automation(workspace_id, automation_id)
        runs = manager.list_runs(workspace_id, automation_id, status=status, limit=limit, offset=offset)
    except Exception as exc:
        raise to_http_exception(exc, f"list runs of {automation_id}") from exc
    return RunList(runs=runs, total=len(runs))
