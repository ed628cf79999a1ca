"""Request and response schemas for reminder actions."""

from datetime import datetime

from pydantic import BaseModel, Field

from carecue.schemas.occurrence import Occurrence
from carecue.schemas.reminder import Reminder


class SnoozeRequest(BaseModel):
    """Schema for snoozing a reminder."""

    minutes: int = Field(default=15, ge=1, le=120)


class TakenRequest(BaseModel):
    """Schema for marking a dose taken. Without ``time`` the latest due dose is used."""

    time: datetime | None = None


class ActionResult(BaseModel):
    """Schema for the outcome of a reminder action."""

    ok: bool
    message: str | None = None
    reminder: Reminder | None = None
    occurrence: Occurrence | None = None


class NextDue(BaseModel):
    """Schema for a reminder's next alert time."""

    reminder_id: str
    next_due: datetime | None = None
