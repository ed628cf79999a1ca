"""Reporting endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from carecue.api.dependencies import get_controller
from carecue.services.controller import ReconciliationController

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/stats", response_model=dict)
async def get_stats(
    controller: ReconciliationController = Depends(get_controller),
) -> dict[str, Any]:
    """Adherence summary plus the remote service's stats and upcoming doses."""
    return await controller.admin_stats()
