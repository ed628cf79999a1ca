"""Scheduling policy: pure decisions about when reminders are due.

Nothing in this module performs I/O or reads the clock. Every decision takes the
reference instant ``now`` explicitly so results are deterministic given their inputs.

Cadence times-of-day are wall-clock times in the cadence's timezone; all instants
returned here are timezone-aware UTC datetimes.
"""

import math
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import pytz

from carecue.errors import ValidationError
from carecue.schemas.occurrence import Occurrence, OccurrenceStatus
from carecue.schemas.reminder import Cadence, Frequency, Reminder, ReminderUpdate, as_utc

DEFAULT_GRACE = timedelta(minutes=10)
DEFAULT_DEDUP_WINDOW = timedelta(hours=2)
DEFAULT_MISSED_LOOKBACK = timedelta(hours=24)

# An occurrence "belongs" to a due instant when recorded this close to it
MATCH_TOLERANCE = timedelta(minutes=1)

DEFAULT_CALENDAR_TIME = time(9, 0)

# Longest gap between two due days we search across (monthly on the 31st, custom steps)
SEARCH_HORIZON_DAYS = 400

# Any of these recorded for an instant means it must not be marked missed again.
# A snooze only defers the instant; see find_missed_instants.
RESOLVING_STATUSES = frozenset(
    {
        OccurrenceStatus.COMPLETED,
        OccurrenceStatus.SKIPPED,
        OccurrenceStatus.MISSED,
    }
)

AdjustmentPolicy = Callable[[Reminder, list[Occurrence]], ReminderUpdate | None]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_cadence(cadence: Cadence) -> None:
    """Reject cadences that can never produce a sensible schedule."""
    try:
        pytz.timezone(cadence.timezone)
    except pytz.UnknownTimeZoneError:
        raise ValidationError(f"Unknown timezone: {cadence.timezone}") from None

    if cadence.start_date and cadence.end_date and cadence.end_date < cadence.start_date:
        raise ValidationError("End date is before start date")

    if cadence.is_interval:
        if cadence.interval_minutes is None or cadence.interval_minutes <= 0:
            raise ValidationError("Interval must be a positive number of minutes")
        return

    if cadence.frequency is None:
        if not cadence.times:
            raise ValidationError("No reminder times configured")
        return

    if cadence.frequency == Frequency.WEEKLY and not cadence.days_of_week:
        raise ValidationError("Weekly reminders need at least one weekday")
    if cadence.frequency in (Frequency.MONTHLY, Frequency.CUSTOM) and cadence.start_date is None:
        raise ValidationError(f"{cadence.frequency.value.title()} reminders need a start date")
    if cadence.frequency == Frequency.CUSTOM and (cadence.every_n_days or 0) < 1:
        raise ValidationError("Custom reminders need a repeat interval of at least one day")


def validate_reminder(label: str | None, cadence: Cadence | None) -> None:
    """Validate the user-editable parts of a reminder."""
    if label is not None and not label.strip():
        raise ValidationError("Please enter a name")
    if cadence is not None:
        validate_cadence(cadence)


# ---------------------------------------------------------------------------
# Due instant generation
# ---------------------------------------------------------------------------


def _zone(cadence: Cadence) -> Any:
    try:
        return pytz.timezone(cadence.timezone)
    except pytz.UnknownTimeZoneError:
        return pytz.UTC


def _times_of_day(cadence: Cadence) -> list[time]:
    times = sorted({datetime.strptime(t, "%H:%M").time() for t in cadence.times})
    if not times and cadence.is_calendar:
        times = [DEFAULT_CALENDAR_TIME]
    return times


def _weekday_index(day: date) -> int:
    """0=Sunday ... 6=Saturday, the convention used by ``days_of_week``."""
    return (day.weekday() + 1) % 7


def _day_matches(cadence: Cadence, day: date) -> bool:
    if cadence.start_date and day < cadence.start_date:
        return False
    if cadence.end_date and day > cadence.end_date:
        return False
    if not cadence.is_calendar or cadence.frequency == Frequency.DAILY:
        return True
    if cadence.frequency == Frequency.WEEKLY:
        return _weekday_index(day) in cadence.days_of_week
    if cadence.frequency == Frequency.MONTHLY:
        anchor_day = cadence.start_date.day if cadence.start_date else 1
        return day.day == anchor_day
    # Custom: every N days counted from the start date
    start = cadence.start_date or day
    step = max(cadence.every_n_days or 1, 1)
    return (day - start).days % step == 0


def _instant(zone: Any, day: date, tod: time) -> datetime:
    local = zone.localize(datetime.combine(day, tod))
    return local.astimezone(timezone.utc)


def _instants_on(cadence: Cadence, zone: Any, day: date) -> list[datetime]:
    if not _day_matches(cadence, day):
        return []
    return sorted(_instant(zone, day, tod) for tod in _times_of_day(cadence))


def due_instants_between(cadence: Cadence, start: datetime, end: datetime) -> list[datetime]:
    """All due instants in the half-open range ``[start, end)``, ascending."""
    start, end = as_utc(start), as_utc(end)
    if start >= end:
        return []

    if cadence.is_interval:
        if cadence.anchor is None:
            return []
        step = timedelta(minutes=cadence.interval_minutes)
        k = max(0, math.ceil((start - cadence.anchor) / step))
        instants = []
        current = cadence.anchor + k * step
        while current < end:
            instants.append(current)
            current += step
        return instants

    zone = _zone(cadence)
    day = start.astimezone(zone).date() - timedelta(days=1)
    last_day = end.astimezone(zone).date() + timedelta(days=1)
    instants = []
    while day <= last_day:
        instants.extend(i for i in _instants_on(cadence, zone, day) if start <= i < end)
        day += timedelta(days=1)
    return sorted(instants)


def next_due(cadence: Cadence, now: datetime) -> datetime | None:
    """Nearest due instant strictly after ``now``, or None once the cadence is exhausted.

    Instants at or before ``now`` are never offered again: a time-of-day that has
    already passed today rolls over to tomorrow.
    """
    now = as_utc(now)

    if cadence.is_interval:
        step = timedelta(minutes=cadence.interval_minutes)
        if cadence.anchor is None:
            return now + step
        if now < cadence.anchor:
            return cadence.anchor
        k = (now - cadence.anchor) // step + 1
        return cadence.anchor + k * step

    zone = _zone(cadence)
    day = now.astimezone(zone).date()
    if cadence.start_date and cadence.start_date > day:
        day = cadence.start_date

    for _ in range(SEARCH_HORIZON_DAYS):
        if cadence.end_date and day > cadence.end_date:
            return None
        upcoming = [i for i in _instants_on(cadence, zone, day) if i > now]
        if upcoming:
            return upcoming[0]
        day += timedelta(days=1)
    return None


def previous_due(cadence: Cadence, now: datetime) -> datetime | None:
    """Most recent due instant at or before ``now``, or None if there is none."""
    now = as_utc(now)

    if cadence.is_interval:
        if cadence.anchor is None or now < cadence.anchor:
            return None
        step = timedelta(minutes=cadence.interval_minutes)
        return cadence.anchor + ((now - cadence.anchor) // step) * step

    zone = _zone(cadence)
    day = now.astimezone(zone).date()
    if cadence.end_date and day > cadence.end_date:
        day = cadence.end_date

    for _ in range(SEARCH_HORIZON_DAYS):
        if cadence.start_date and day < cadence.start_date:
            return None
        past = [i for i in _instants_on(cadence, zone, day) if i <= now]
        if past:
            return past[-1]
        day -= timedelta(days=1)
    return None


def next_alert_time(reminder: Reminder, now: datetime) -> datetime | None:
    """When the local alert for a reminder should next fire."""
    if not reminder.enabled:
        return None
    if reminder.snooze_until and reminder.snooze_until > now:
        return reminder.snooze_until
    return next_due(reminder.cadence, now)


# ---------------------------------------------------------------------------
# Missed detection
# ---------------------------------------------------------------------------


def occurrence_matches(occurrence: Occurrence, instant: datetime) -> bool:
    return abs(occurrence.scheduled_time - instant) <= MATCH_TOLERANCE


def is_resolved(
    reminder_id: str,
    instant: datetime,
    history: Iterable[Occurrence],
    statuses: Iterable[OccurrenceStatus] = RESOLVING_STATUSES,
) -> bool:
    """Whether an outcome in ``statuses`` has already been recorded for this due instant."""
    statuses = frozenset(statuses)
    return any(
        occ.reminder_id == reminder_id
        and occ.status in statuses
        and occurrence_matches(occ, instant)
        for occ in history
    )


def is_missed(
    reminder_id: str,
    instant: datetime,
    now: datetime,
    history: Iterable[Occurrence],
    grace: timedelta = DEFAULT_GRACE,
) -> bool:
    """An instant is missed once its grace period has fully elapsed unresolved."""
    return instant + grace < now and not is_resolved(reminder_id, instant, history)


def find_missed_instants(
    reminder: Reminder,
    history: list[Occurrence],
    now: datetime,
    grace: timedelta = DEFAULT_GRACE,
    lookback: timedelta = DEFAULT_MISSED_LOOKBACK,
) -> list[datetime]:
    """Due instants of ``reminder`` that should be reported as missed."""
    if not reminder.enabled or reminder.is_local:
        return []

    start = now - lookback
    if reminder.created_at and reminder.created_at > start:
        start = reminder.created_at

    missed = []
    for instant in due_instants_between(reminder.cadence, start, now - grace):
        # A pending snooze extends the grace period of everything it deferred
        if (
            reminder.snooze_until
            and instant < reminder.snooze_until
            and now <= reminder.snooze_until + grace
        ):
            continue
        if is_missed(reminder.id, instant, now, history, grace):
            missed.append(instant)
    return missed


# ---------------------------------------------------------------------------
# "Taken" deduplication
# ---------------------------------------------------------------------------


def resolve_taken_instant(
    cadence: Cadence, now: datetime, occurrence_time: datetime | None = None
) -> datetime:
    """Which due instant a "taken" action refers to.

    An explicit time wins. Otherwise it is the latest due instant at or before now
    (today's dose if it has passed, else yesterday's), or now itself when the cadence
    has never been due.
    """
    if occurrence_time is not None:
        return as_utc(occurrence_time)
    return previous_due(cadence, now) or as_utc(now)


def find_duplicate_taken(
    reminder_id: str,
    instant: datetime,
    history: Iterable[Occurrence],
    window: timedelta = DEFAULT_DEDUP_WINDOW,
) -> Occurrence | None:
    """The completed occurrence within ``window`` of ``instant``, if any (edges inclusive)."""
    for occ in history:
        if (
            occ.reminder_id == reminder_id
            and occ.status == OccurrenceStatus.COMPLETED
            and abs(occ.scheduled_time - instant) <= window
        ):
            return occ
    return None


# ---------------------------------------------------------------------------
# Adaptive cadence
# ---------------------------------------------------------------------------


def shift_time_of_day(value: str, minutes: int) -> str:
    """Move "HH:MM" later by ``minutes``, never past 23:59."""
    hours, mins = (int(p) for p in value.split(":"))
    total = min(hours * 60 + mins + minutes, 23 * 60 + 59)
    return f"{total // 60:02d}:{total % 60:02d}"


@dataclass
class AdaptiveCadencePolicy:
    """Default cadence adjustment for chronically missed reminders.

    Once ``missed_count`` has grown by ``threshold`` since the last accepted
    adjustment, interval reminders get their interval shortened by
    ``interval_factor`` (never below ``min_interval`` minutes) and time-of-day
    reminders have their most-missed time moved ``shift_minutes`` later.
    The result is only a proposal; the controller sends it to the server.
    """

    threshold: int = 3
    interval_factor: float = 0.8
    min_interval: int = 5
    shift_minutes: int = 30

    @classmethod
    def from_config(cls, policy: dict[str, Any]) -> "AdaptiveCadencePolicy":
        return cls(
            threshold=int(policy["adaptive_threshold"]),
            interval_factor=float(policy["adaptive_interval_factor"]),
            min_interval=int(policy["adaptive_min_interval"]),
            shift_minutes=int(policy["adaptive_shift_minutes"]),
        )

    def __call__(self, reminder: Reminder, history: list[Occurrence]) -> ReminderUpdate | None:
        if reminder.missed_count - reminder.cadence_adjusted_at_missed < self.threshold:
            return None

        cadence = reminder.cadence
        if cadence.is_interval:
            current = cadence.interval_minutes
            proposed = max(self.min_interval, math.floor(current * self.interval_factor))
            if proposed >= current:
                return None
            new_cadence = cadence.model_copy(update={"interval_minutes": proposed})
        elif cadence.times:
            target = self._most_missed_time(reminder, history)
            shifted = shift_time_of_day(target, self.shift_minutes)
            if shifted == target or shifted in cadence.times:
                return None
            times = sorted(shifted if t == target else t for t in cadence.times)
            new_cadence = cadence.model_copy(update={"times": times})
        else:
            return None

        return ReminderUpdate(
            cadence=new_cadence, cadence_adjusted_at_missed=reminder.missed_count
        )

    def _most_missed_time(self, reminder: Reminder, history: list[Occurrence]) -> str:
        zone = _zone(reminder.cadence)
        times = reminder.cadence.times
        counts: Counter[str] = Counter()
        for occ in history:
            if occ.reminder_id != reminder.id or occ.status != OccurrenceStatus.MISSED:
                continue
            local = occ.scheduled_time.astimezone(zone).strftime("%H:%M")
            if local in times:
                counts[local] += 1
        # Ties go to the earliest time in the list
        return max(times, key=lambda t: (counts[t], -times.index(t)))
