"""API routers."""

from carecue.api.admin import router as admin_router
from carecue.api.health import router as health_router
from carecue.api.reminders import router as reminders_router

__all__ = [
    "admin_router",
    "health_router",
    "reminders_router",
]
