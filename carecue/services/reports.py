"""Adherence reporting over the occurrence history."""

import csv
import io
from collections import Counter
from datetime import datetime
from typing import Any

from carecue.schemas.occurrence import Occurrence, OccurrenceStatus
from carecue.schemas.reminder import Reminder


def adherence_summary(history: list[Occurrence], since: datetime | None = None) -> dict[str, Any]:
    """Count occurrences per status and compute the adherence rate.

    The rate is completed / (completed + missed + skipped); snoozes are not
    outcomes on their own. Returns None for the rate when nothing has resolved yet.
    """
    entries = [o for o in history if since is None or o.scheduled_time >= since]
    counts = Counter(o.status for o in entries)

    completed = counts[OccurrenceStatus.COMPLETED]
    resolved = completed + counts[OccurrenceStatus.MISSED] + counts[OccurrenceStatus.SKIPPED]

    return {
        "total": len(entries),
        "completed": completed,
        "missed": counts[OccurrenceStatus.MISSED],
        "skipped": counts[OccurrenceStatus.SKIPPED],
        "snoozed": counts[OccurrenceStatus.SNOOZED],
        "adherence_rate": round(completed / resolved, 3) if resolved else None,
    }


def history_csv(history: list[Occurrence], reminders: list[Reminder]) -> str:
    """Render the occurrence history as CSV, newest first."""
    labels = {r.id: r.label for r in reminders}
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["reminder_id", "reminder", "scheduled_time", "status", "recorded_time"])
    for occ in sorted(history, key=lambda o: o.scheduled_time, reverse=True):
        writer.writerow(
            [
                occ.reminder_id,
                labels.get(occ.reminder_id, ""),
                occ.scheduled_time.isoformat(),
                occ.status.value,
                occ.recorded_time.isoformat() if occ.recorded_time else "",
            ]
        )
    return buffer.getvalue()
