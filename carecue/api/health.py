"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from carecue.api.dependencies import get_controller
from carecue.database import get_db
from carecue.services.controller import ReconciliationController

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "healthy"}


@router.get("/health/db")
def db_health_check(db: Session = Depends(get_db)) -> dict[str, str]:
    """Offline cache database health check."""
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": str(e)}


@router.get("/health/sync")
def sync_health_check(
    controller: ReconciliationController = Depends(get_controller),
) -> dict[str, Any]:
    """Whether reminders come from the server or the offline cache."""
    error = controller.last_error
    return {
        "status": "healthy" if controller.state.value != "degraded" else "degraded",
        "state": controller.state.value,
        "pending": len(controller.pending),
        "last_error": error.message if error is not None else None,
    }
