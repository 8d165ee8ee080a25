"""Mapping from library exceptions to HTTP errors."""

import logging

from fastapi import HTTPException

from autopilot_library.automations.errors import AdmissionRejectedError
from autopilot_library.automations.errors import AutomationNotFoundError
from autopilot_library.automations.errors import InvalidWebhookSecretError
from autopilot_library.automations.errors import RunNotFoundError
from autopilot_library.automations.errors import WorkspaceNotFoundError

logger = logging.getLogger(__name__)


def to_http_exception(exc: Exception, action: str) -> HTTPException:
    """Translate an exception raised by the automation manager.

    - not found (workspace, automation, run) -> 404
    - concurrency limit -> 429
    - invalid webhook secret -> 401
    - other ValueError / missing working directory -> 400
    - anything else -> 500 (logged)
    """
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, (WorkspaceNotFoundError, AutomationNotFoundError, RunNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AdmissionRejectedError):
        return HTTPException(status_code=429, detail=str(exc))
    if isinstance(exc, InvalidWebhookSecretError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, (ValueError, FileNotFoundError)):
        return HTTPException(status_code=400, detail=str(exc))

    logger.error(f"Failed to {action}: {exc}")
    return HTTPException(status_code=500, detail="Internal server error")
