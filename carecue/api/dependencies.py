"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Request

from carecue.errors import (
    CareCueError,
    DuplicateOccurrence,
    NetworkUnavailable,
    NotFound,
    Unauthorized,
    ValidationError,
)
from carecue.services.controller import ReconciliationController
from carecue.services.mutations import MutationResult


def get_controller(request: Request) -> ReconciliationController:
    """The controller started by the application lifespan."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="Reminder engine is not running")
    return controller


def status_for(error: CareCueError) -> int:
    """HTTP status for an engine error."""
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, DuplicateOccurrence):
        return 409
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, Unauthorized):
        return 401
    if isinstance(error, NetworkUnavailable):
        return 503
    return 502


def raise_for_result(result: MutationResult) -> MutationResult:
    """Turn a failed operation into an HTTPException; pass successes through."""
    if result.ok:
        return result

    detail = {"message": result.message, "kind": type(result.error).__name__}
    if result.informational:
        detail["informational"] = True
        if result.occurrence is not None:
            detail["occurrence_id"] = result.occurrence.id
    if result.retry_token:
        detail["retry_token"] = result.retry_token
    raise HTTPException(status_code=status_for(result.error), detail=detail)
