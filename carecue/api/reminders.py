"""Reminder API endpoints backed by the reconciliation controller."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response

from carecue.api.dependencies import get_controller, raise_for_result
from carecue.schemas.actions import ActionResult, NextDue, SnoozeRequest, TakenRequest
from carecue.schemas.occurrence import Occurrence
from carecue.schemas.reminder import Reminder, ReminderCreate, ReminderUpdate
from carecue.services.alerts import AlertFired, parse_action
from carecue.services.controller import ReconciliationController
from carecue.services.mutations import MutationResult
from carecue.services.reports import history_csv

router = APIRouter(prefix="/api/v1/reminders", tags=["reminders"])


def _action_result(result: MutationResult) -> ActionResult:
    raise_for_result(result)
    return ActionResult(
        ok=True, message=result.message, reminder=result.reminder, occurrence=result.occurrence
    )


def _existing(controller: ReconciliationController, reminder_id: str) -> Reminder:
    reminder = controller.get(reminder_id)
    if reminder is None:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


@router.get("/", response_model=list[Reminder])
def list_reminders(
    controller: ReconciliationController = Depends(get_controller),
) -> list[Reminder]:
    """List reminders, including changes that are still syncing."""
    return controller.reminders


@router.post("/refresh", response_model=dict)
async def refresh_reminders(
    controller: ReconciliationController = Depends(get_controller),
) -> dict[str, Any]:
    """Reload reminders and history from the remote service."""
    state = await controller.load_all()
    return {
        "state": state.value,
        "reminders": len(controller.reminders),
        "history": len(controller.history),
    }


@router.get("/history/export")
def export_history(controller: ReconciliationController = Depends(get_controller)) -> Response:
    """Download the occurrence history as CSV. Premium only."""
    if not controller.premium:
        raise HTTPException(status_code=403, detail="History export requires a premium subscription")
    content = history_csv(controller.visible_history(), controller.reminders)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="carecue-history.csv"'},
    )


@router.post("/retry/{retry_token}", response_model=ActionResult)
async def retry_action(
    retry_token: str, controller: ReconciliationController = Depends(get_controller)
) -> ActionResult:
    """Replay an operation that failed with a retry affordance."""
    return _action_result(await controller.retry(retry_token))


@router.post("/", response_model=Reminder, status_code=201)
async def create_reminder(
    reminder: ReminderCreate, controller: ReconciliationController = Depends(get_controller)
) -> Reminder:
    """Create a new reminder."""
    result = raise_for_result(await controller.create(reminder))
    return result.reminder


@router.put("/{reminder_id}", response_model=Reminder)
async def update_reminder(
    reminder_id: str,
    reminder_update: ReminderUpdate,
    controller: ReconciliationController = Depends(get_controller),
) -> Reminder:
    """Update a reminder. Only the fields sent are changed."""
    result = raise_for_result(await controller.update(reminder_id, reminder_update))
    return result.reminder or _existing(controller, reminder_id)


@router.delete("/{reminder_id}", status_code=204)
async def delete_reminder(
    reminder_id: str, controller: ReconciliationController = Depends(get_controller)
) -> None:
    """Delete a reminder and cancel its alerts."""
    raise_for_result(await controller.remove(reminder_id))


@router.post("/{reminder_id}/snooze", response_model=ActionResult)
async def snooze_reminder(
    reminder_id: str,
    snooze: SnoozeRequest | None = None,
    controller: ReconciliationController = Depends(get_controller),
) -> ActionResult:
    """Snooze a reminder's next alert."""
    minutes = snooze.minutes if snooze else SnoozeRequest().minutes
    return _action_result(await controller.snooze(reminder_id, minutes))


@router.post("/{reminder_id}/missed", response_model=ActionResult)
async def mark_missed(
    reminder_id: str, controller: ReconciliationController = Depends(get_controller)
) -> ActionResult:
    """Report the latest due dose as missed."""
    return _action_result(await controller.mark_missed(reminder_id))


@router.post("/{reminder_id}/taken", response_model=ActionResult)
async def mark_taken(
    reminder_id: str,
    taken: TakenRequest | None = None,
    controller: ReconciliationController = Depends(get_controller),
) -> ActionResult:
    """Record a dose as taken. A second tap within the dedup window returns 409."""
    occurrence_time = taken.time if taken else None
    return _action_result(await controller.mark_taken(reminder_id, occurrence_time))


@router.get("/{reminder_id}/next", response_model=NextDue)
def get_next_due(
    reminder_id: str, controller: ReconciliationController = Depends(get_controller)
) -> NextDue:
    """When the reminder's next alert goes off (null when disabled or ended)."""
    _existing(controller, reminder_id)
    return NextDue(reminder_id=reminder_id, next_due=controller.next_due(reminder_id))


@router.get("/{reminder_id}/history", response_model=list[Occurrence])
def get_history(
    reminder_id: str, controller: ReconciliationController = Depends(get_controller)
) -> list[Occurrence]:
    """Occurrence history for a reminder, newest first."""
    _existing(controller, reminder_id)
    return controller.history_for(reminder_id)


@router.post("/{reminder_id}/alerts/{action}", response_model=ActionResult)
async def alert_action(
    reminder_id: str,
    action: str,
    controller: ReconciliationController = Depends(get_controller),
) -> ActionResult:
    """Handle an action tapped on a reminder's alert (complete, snooze15, missed...)."""
    try:
        alert_kind, snooze_minutes = parse_action(action)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None

    reminder = _existing(controller, reminder_id)
    event = AlertFired(reminder_id=reminder.id, action=alert_kind, snooze_minutes=snooze_minutes)
    result = await controller.handle_alert(event)
    if result is None:
        return ActionResult(ok=True, message=f"Alert {alert_kind.value} handled", reminder=reminder)
    return _action_result(result)
