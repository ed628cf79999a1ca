"""Pydantic schemas for reminders and their occurrence history."""

from carecue.schemas.actions import ActionResult, NextDue, SnoozeRequest, TakenRequest
from carecue.schemas.occurrence import Occurrence, OccurrenceCreate, OccurrenceStatus
from carecue.schemas.reminder import (
    Cadence,
    Frequency,
    Reminder,
    ReminderCreate,
    ReminderKind,
    ReminderUpdate,
)

__all__ = [
    "ActionResult",
    "Cadence",
    "Frequency",
    "NextDue",
    "Occurrence",
    "OccurrenceCreate",
    "OccurrenceStatus",
    "Reminder",
    "ReminderCreate",
    "ReminderKind",
    "ReminderUpdate",
    "SnoozeRequest",
    "TakenRequest",
]
