"""FastAPI application entry point."""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from alembic import command
from alembic.config import Config
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carecue import __version__
from carecue.api import admin_router, health_router, reminders_router
from carecue.config import get_settings
from carecue.services.alerts import LocalAlertAdapter
from carecue.services.controller import ReconciliationController
from carecue.services.offline_cache import OfflineCache
from carecue.services.remote import RemoteReminderService

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Run alembic migrations on startup."""
    # Skip migrations during testing
    if os.environ.get("TESTING") == "1":
        logger.info("Skipping migrations in test mode")
        return

    try:
        alembic_cfg = Config("alembic.ini")
        command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Failed to run migrations: {e}")
        raise


def build_controller() -> ReconciliationController:
    """Wire the controller to the remote service, offline cache and local alerts."""
    cache = OfflineCache()
    return ReconciliationController(
        remote=RemoteReminderService(),
        cache=cache,
        alerts=LocalAlertAdapter(cache=cache),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup - run migrations, then load reminders and arm alerts
    run_migrations()
    controller = build_controller()
    app.state.controller = controller
    state = await controller.start()
    logger.info(f"Reminder engine started ({state.value})")
    yield
    # Shutdown
    await controller.stop()
    app.state.controller = None


app = FastAPI(
    title="CareCue API",
    description="Medication and hydration reminders with adherence tracking",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware for PWA access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(reminders_router)
app.include_router(admin_router)


@app.get("/")
def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "name": "CareCue API",
        "version": __version__,
        "docs": "/docs",
    }
