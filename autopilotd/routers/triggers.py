"""Inbound trigger endpoints.

Webhook and deep-link automations have no background subscription; these
endpoints dispatch them.
"""

import json
import logging
from typing import Annotated
from typing import Any

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Header
from fastapi import Request
from pydantic import BaseModel
from pydantic import Field as PydanticField

from autopilot_library.automations.manager import AutomationManager
from autopilotd.dependencies import get_automation_manager

from .automations import RunResponse
from .errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["triggers"])

Manager = Annotated[AutomationManager, Depends(get_automation_manager)]


class DeepLinkRequest(BaseModel):
    url: str = PydanticField(..., description="autopilot://automation/run/{automation_id}")


async def _read_payload(request: Request) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return body.decode("utf-8", errors="replace")


@router.post("/hooks/{workspace_id}/{automation_id}", status_code=202, response_model=RunResponse)
async def receive_webhook(
    workspace_id: str,
    automation_id: str,
    request: Request,
    manager: Manager,
    secret: Annotated[str | None, Header(alias="X-Automation-Secret")] = None,
) -> RunResponse:
    """Run a webhook automation.

    The request body (JSON, or raw text) is passed to the agent as
    ``payload`` in the trigger context.

    Raises:
        HTTPException:
            - 401 if the automation has a secret and the header does not match
            - 404 if no enabled webhook automation has this id
            - 429 if the concurrent run limit is reached
    """
    payload = await _read_payload(request)
    try:
        run = await manager.dispatch_webhook(workspace_id, automation_id, payload, secret)
    except Exception as exc:
        raise to_http_exception(exc, f"dispatch webhook {automation_id}") from exc

    logger.info(f"Webhook run {run.id} started for automation {automation_id}")
    return RunResponse(run=run)


@router.post("/deep-links", status_code=202, response_model=RunResponse)
async def open_deep_link(link: DeepLinkRequest, manager: Manager) -> RunResponse:
    """Dispatch an ``autopilot://automation/run/{id}`` URL.

    Example:
        ```json
        {"url": "autopilot://automation/run/3f2c...?workspace=default&ticket=42"}
        ```
    """
    try:
        run = await manager.dispatch_deep_link(link.url)
    except Exception as exc:
        raise to_http_exception(exc, "dispatch deep link") from exc

    logger.info(f"Deep link run {run.id} started ({link.url})")
    return RunResponse(run=run)
