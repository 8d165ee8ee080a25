"""Main FastAPI application for the autopilot daemon.

This module creates and configures the FastAPI application that exposes
autopilot_library via REST API with SSE streaming.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autopilot_library.automations.manager import AutomationManager
from autopilot_library.automations.store import AutomationStore
from autopilot_library.config import load_config
from autopilot_library.execution import CommandExecutionService
from autopilot_library.triggers.host import HeadlessHost
from autopilot_library.triggers.host import PowerMonitor
from autopilot_library.workspaces import WorkspaceRegistry

from . import __version__
from .routers import automations_router
from .routers import events_router
from .routers import status_router
from .routers import triggers_router
from .services.global_events import GlobalEventSink

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

config = load_config()
logging.getLogger().setLevel(config.log_level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Builds the automation engine on startup and stops it on shutdown.

    Args:
        app: FastAPI application instance
    """
    logger.info(f"Starting autopilot daemon on {config.host}:{config.port}")

    workspaces = WorkspaceRegistry.from_settings(config)
    for workspace in workspaces.list():
        logger.info(f"Workspace {workspace.id}: {workspace.root_path}")

    host = HeadlessHost()
    power_monitor = PowerMonitor(host.signals)
    execution = CommandExecutionService(config.agent_command, default_max_turns=config.default_max_turns)

    manager = AutomationManager(
        store=AutomationStore(),
        execution=execution,
        workspaces=workspaces,
        settings=config,
        sink=GlobalEventSink(),
        host=host,
    )

    power_monitor.start()
    await manager.initialize()
    app.state.automation_manager = manager

    yield

    logger.info("Shutting down autopilot daemon")

    try:
        await manager.shutdown()
    except Exception as e:
        logger.error(f"Failed to shut down automation manager: {e}")
    await power_monitor.stop()
    app.state.automation_manager = None


app = FastAPI(
    title="autopilotd",
    description="REST API daemon for trigger-driven agent automations",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(automations_router)
app.include_router(events_router)
app.include_router(status_router)
app.include_router(triggers_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint.

    Returns:
        Welcome message with API information
    """
    return {
        "name": "autopilotd",
        "version": __version__,
        "description": "REST API daemon for trigger-driven agent automations",
        "docs": "/docs",
        "openapi": "/openapi.json",
    }
