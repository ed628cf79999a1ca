"""Optimistic mutations and the reducer that applies, confirms or rolls them back.

A ``PendingMutation`` is the record of a local change that the server has not
confirmed yet. It carries the snapshot needed to undo the change. All three phases
go through ``reduce_reminders`` so there is exactly one place that knows how each
kind of mutation affects the reminder list.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union

from carecue.errors import CareCueError, DuplicateOccurrence
from carecue.schemas.occurrence import Occurrence
from carecue.schemas.reminder import Reminder, ReminderUpdate


class Phase(str, Enum):
    APPLY = "apply"
    CONFIRM = "confirm"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class Creating:
    """A reminder created locally under a temporary id."""

    reminder: Reminder

    @property
    def reminder_id(self) -> str:
        return self.reminder.id


@dataclass(frozen=True)
class Updating:
    reminder_id: str
    patch: ReminderUpdate
    before: Reminder


@dataclass(frozen=True)
class Deleting:
    reminder_id: str
    before: Reminder
    index: int


@dataclass(frozen=True)
class Snoozing:
    reminder_id: str
    minutes: int
    until: datetime
    before: Reminder


PendingMutation = Union[Creating, Updating, Deleting, Snoozing]


def _replace(reminders: list[Reminder], reminder_id: str, new: Reminder) -> list[Reminder]:
    return [new if r.id == reminder_id else r for r in reminders]


def _without(reminders: list[Reminder], reminder_id: str) -> list[Reminder]:
    return [r for r in reminders if r.id != reminder_id]


def _find(reminders: list[Reminder], reminder_id: str) -> Reminder | None:
    return next((r for r in reminders if r.id == reminder_id), None)


def apply_patch(reminder: Reminder, patch: ReminderUpdate) -> Reminder:
    """Return a copy of ``reminder`` with the fields set on ``patch`` applied."""
    changes = {}
    for field in patch.model_fields_set:
        value = getattr(patch, field)
        # Only the note can be cleared; None elsewhere means "leave as is"
        if value is None and field != "note":
            continue
        if hasattr(reminder, field):
            changes[field] = value
    return reminder.model_copy(update=changes)


def reduce_reminders(
    reminders: list[Reminder],
    mutation: PendingMutation,
    phase: Phase,
    confirmed: Reminder | None = None,
) -> list[Reminder]:
    """Return the reminder list after ``mutation`` goes through ``phase``.

    ``confirmed`` is the server's version of the reminder for the CONFIRM phase.
    The input list is never modified.
    """
    if isinstance(mutation, Creating):
        if phase == Phase.APPLY:
            return [mutation.reminder] + _without(reminders, mutation.reminder.id)
        if phase == Phase.CONFIRM and confirmed is not None:
            if _find(reminders, mutation.reminder.id) is None:
                # Removed locally while the create was in flight
                return list(reminders)
            return _replace(_without(reminders, confirmed.id), mutation.reminder.id, confirmed)
        return _without(reminders, mutation.reminder.id)

    if isinstance(mutation, Deleting):
        if phase in (Phase.APPLY, Phase.CONFIRM):
            return _without(reminders, mutation.reminder_id)
        if _find(reminders, mutation.reminder_id) is not None:
            return list(reminders)
        restored = list(reminders)
        restored.insert(min(mutation.index, len(restored)), mutation.before)
        return restored

    if isinstance(mutation, (Updating, Snoozing)):
        current = _find(reminders, mutation.reminder_id)
        if current is None:
            return list(reminders)
        if phase == Phase.APPLY:
            if isinstance(mutation, Updating):
                return _replace(reminders, mutation.reminder_id, apply_patch(current, mutation.patch))
            return _replace(
                reminders,
                mutation.reminder_id,
                current.model_copy(update={"snooze_until": mutation.until}),
            )
        if phase == Phase.CONFIRM and confirmed is not None:
            return _replace(reminders, mutation.reminder_id, confirmed)
        return _replace(reminders, mutation.reminder_id, mutation.before)

    raise TypeError(f"Unknown mutation: {mutation!r}")


@dataclass
class MutationResult:
    """Outcome of a UI-level operation.

    A failed result carries the error and, when the failure is worth retrying, a
    ``retry`` coroutine function that replays the same operation against whatever
    the local state is at the time it is called.
    """

    ok: bool
    reminder: Reminder | None = None
    occurrence: Occurrence | None = None
    error: CareCueError | None = None
    message: str | None = None
    retry: Callable[[], Awaitable["MutationResult"]] | None = None
    retry_token: str | None = None

    @property
    def informational(self) -> bool:
        """Duplicates are reported to the user as information, not as failures."""
        return isinstance(self.error, DuplicateOccurrence)

    @property
    def quiet(self) -> bool:
        """Failures absorbed locally without alarming the user."""
        return self.error is not None and self.error.quiet

    @classmethod
    def success(cls, **kwargs) -> "MutationResult":
        return cls(ok=True, **kwargs)

    @classmethod
    def failure(cls, error: CareCueError, **kwargs) -> "MutationResult":
        kwargs.setdefault("message", error.message)
        return cls(ok=False, error=error, **kwargs)
