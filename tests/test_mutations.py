"""Tests for the optimistic mutation reducer."""

from datetime import datetime, timezone

import pytest

from carecue.errors import DuplicateOccurrence, NetworkUnavailable
from carecue.schemas.reminder import Reminder, ReminderUpdate
from carecue.services.mutations import (
    Creating,
    Deleting,
    MutationResult,
    Phase,
    Snoozing,
    Updating,
    apply_patch,
    reduce_reminders,
)


def reminder(reminder_id: str, label: str = "Iron", **fields) -> Reminder:
    return Reminder.model_validate(
        {"id": reminder_id, "label": label, "cadence": {"times": ["08:00"]}, **fields}
    )


@pytest.fixture
def reminders() -> list[Reminder]:
    return [reminder("1", "Iron"), reminder("2", "Water", kind="hydration"), reminder("3", "Zinc")]


def test_create_lifecycle(reminders):
    """Test a created reminder is shown first and swapped for the server copy."""
    temp = reminder("tmp-1", "Magnesium")
    mutation = Creating(reminder=temp)

    applied = reduce_reminders(reminders, mutation, Phase.APPLY)
    assert [r.id for r in applied] == ["tmp-1", "1", "2", "3"]

    server = reminder("42", "Magnesium")
    confirmed = reduce_reminders(applied, mutation, Phase.CONFIRM, confirmed=server)
    assert [r.id for r in confirmed] == ["42", "1", "2", "3"]

    rolled_back = reduce_reminders(applied, mutation, Phase.ROLLBACK)
    assert rolled_back == reminders


def test_create_confirm_after_local_removal(reminders):
    """Test a confirmation does not resurrect a reminder removed meanwhile."""
    mutation = Creating(reminder=reminder("tmp-1"))
    confirmed = reduce_reminders(reminders, mutation, Phase.CONFIRM, confirmed=reminder("42"))
    assert [r.id for r in confirmed] == ["1", "2", "3"]


def test_delete_rollback_restores_position(reminders):
    """Test a failed delete puts the reminder back exactly where it was."""
    mutation = Deleting(reminder_id="2", before=reminders[1], index=1)

    applied = reduce_reminders(reminders, mutation, Phase.APPLY)
    assert [r.id for r in applied] == ["1", "3"]

    restored = reduce_reminders(applied, mutation, Phase.ROLLBACK)
    assert restored == reminders


def test_delete_rollback_index_past_end(reminders):
    """Test the restore index is clamped when the list shrank meanwhile."""
    mutation = Deleting(reminder_id="3", before=reminders[2], index=2)
    restored = reduce_reminders([reminders[0]], mutation, Phase.ROLLBACK)
    assert [r.id for r in restored] == ["1", "3"]


def test_update_lifecycle(reminders):
    """Test an update applies its patch and rolls back to the snapshot."""
    mutation = Updating(
        reminder_id="1", patch=ReminderUpdate(label="Iron 50mg", enabled=False), before=reminders[0]
    )

    applied = reduce_reminders(reminders, mutation, Phase.APPLY)
    assert applied[0].label == "Iron 50mg"
    assert applied[0].enabled is False
    assert reminders[0].label == "Iron"

    assert reduce_reminders(applied, mutation, Phase.ROLLBACK) == reminders

    server = reminder("1", "Iron 50mg", enabled=False, missed_count=2)
    confirmed = reduce_reminders(applied, mutation, Phase.CONFIRM, confirmed=server)
    assert confirmed[0].missed_count == 2


def test_snooze_lifecycle(reminders):
    """Test a snooze sets snooze_until until confirmed or rolled back."""
    until = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)
    mutation = Snoozing(reminder_id="3", minutes=30, until=until, before=reminders[2])

    applied = reduce_reminders(reminders, mutation, Phase.APPLY)
    assert applied[2].snooze_until == until
    assert reduce_reminders(applied, mutation, Phase.ROLLBACK)[2].snooze_until is None


def test_apply_patch_only_touches_set_fields():
    """Test unset fields are left alone and only the note can be cleared."""
    original = reminder("1", "Iron", note="With food")
    assert apply_patch(original, ReminderUpdate(label=None)).label == "Iron"
    assert apply_patch(original, ReminderUpdate(note=None)).note is None
    assert apply_patch(original, ReminderUpdate(enabled=False)).note == "With food"


def test_mutation_result_flags():
    """Test duplicates are informational and network failures are quiet."""
    duplicate = MutationResult.failure(DuplicateOccurrence("Already taken"))
    offline = MutationResult.failure(NetworkUnavailable("offline"))

    assert duplicate.informational and not duplicate.quiet
    assert offline.quiet and not offline.informational
    assert offline.message == "offline"
    assert MutationResult.success().ok
