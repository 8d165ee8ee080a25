"""API routers for the autopilot daemon."""

from .automations import router as automations_router
from .events import router as events_router
from .status import router as status_router
from .triggers import router as triggers_router

__all__ = [
    "automations_router",
    "events_router",
    "status_router",
    "triggers_router",
]
