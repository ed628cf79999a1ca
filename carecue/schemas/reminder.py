"""Reminder and cadence schemas."""

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TEMP_ID_PREFIX = "tmp-"


class ReminderKind(str, Enum):
    """What a reminder is for."""

    MEDICATION = "medication"
    HYDRATION = "hydration"
    GENERAL = "general"


class Frequency(str, Enum):
    """Calendar frequency of a date-ranged cadence."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


# Older clients sent these as the reminder "type"
_LEGACY_KINDS = {
    "water": ReminderKind.HYDRATION.value,
    "hydration": ReminderKind.HYDRATION.value,
    "medication": ReminderKind.MEDICATION.value,
    "medicine": ReminderKind.MEDICATION.value,
    "reminder": ReminderKind.GENERAL.value,
}

_CADENCE_FIELDS = (
    "times",
    "frequency",
    "start_date",
    "end_date",
    "days_of_week",
    "every_n_days",
    "interval_minutes",
    "anchor",
    "timezone",
)


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_time_of_day(value: Any) -> str:
    """Normalize a time-of-day to "HH:MM".

    Accepts "H:MM", "HH:MM:SS", ``datetime.time`` and full ISO datetimes (the mobile
    app stored picked times as a timestamp on an arbitrary day).
    """
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, datetime):
        return value.strftime("%H:%M")
    if not isinstance(value, str):
        raise ValueError(f"Invalid time of day: {value!r}")

    text = value.strip()
    if "T" in text:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed.strftime("%H:%M")

    parts = text.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value!r}")
    return f"{hour:02d}:{minute:02d}"


class Cadence(BaseModel):
    """Rule generating the due instants of a reminder.

    Three shapes are supported:

    - times-of-day only (``times``): fires every day at each listed time;
    - calendar (``frequency`` with optional ``start_date``/``end_date``): fires at each
      of ``times`` on matching days; weekly uses ``days_of_week`` (0=Sunday);
    - interval (``interval_minutes``): fires every N minutes from ``anchor``.
    """

    times: list[str] = Field(default_factory=list)
    frequency: Frequency | None = None
    start_date: date | None = None
    end_date: date | None = None
    days_of_week: list[int] = Field(default_factory=list)
    every_n_days: int | None = None
    interval_minutes: int | None = None
    anchor: datetime | None = None
    timezone: str = "UTC"

    @field_validator("times", mode="before")
    @classmethod
    def _normalize_times(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [normalize_time_of_day(v) for v in value]
        return value

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError(f"Weekday index out of range: {day}")
        return sorted(set(value))

    @field_validator("anchor")
    @classmethod
    def _anchor_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def is_interval(self) -> bool:
        return self.interval_minutes is not None

    @property
    def is_calendar(self) -> bool:
        return self.frequency is not None and not self.is_interval


class ReminderBase(BaseModel):
    """Base reminder schema."""

    kind: ReminderKind = ReminderKind.GENERAL
    label: str
    note: str | None = None
    cadence: Cadence = Field(default_factory=Cadence)
    enabled: bool = True


class ReminderCreate(ReminderBase):
    """Schema for creating a reminder."""

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data: Any) -> Any:
        return normalize_reminder_payload(data)


class ReminderUpdate(BaseModel):
    """Schema for updating a reminder. Only fields that are set are sent."""

    kind: ReminderKind | None = None
    label: str | None = None
    note: str | None = None
    cadence: Cadence | None = None
    enabled: bool | None = None
    cadence_adjusted_at_missed: int | None = None


class Reminder(ReminderBase):
    """Schema for a reminder as held by the engine."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    missed_count: int = 0
    snooze_until: datetime | None = None
    cadence_adjusted_at_missed: int = 0
    created_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data: Any) -> Any:
        return normalize_reminder_payload(data)

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("snooze_until", "created_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def is_local(self) -> bool:
        """True while the reminder only has a temporary client-side id."""
        return self.id.startswith(TEMP_ID_PREFIX)


def normalize_reminder_payload(data: Any) -> Any:
    """Accept the field names used by the medication API and older app builds.

    ``name`` becomes ``label``, ``type`` becomes ``kind`` (``water`` is hydration),
    ``reminder`` becomes ``enabled``, cadence fields sent at the top level are folded
    into ``cadence``, and a unix-seconds ``snooze_until`` becomes a timestamp.
    """
    if not isinstance(data, dict):
        return data

    data = dict(data)
    if "label" not in data:
        for key in ("name", "title"):
            if data.get(key):
                data["label"] = data.pop(key)
                break
    if "kind" not in data and "type" in data:
        legacy = str(data.pop("type")).lower()
        data["kind"] = _LEGACY_KINDS.get(legacy, ReminderKind.GENERAL.value)
    if "enabled" not in data and "reminder" in data:
        data["enabled"] = bool(data.pop("reminder"))
    if data.get("enabled") is None:
        data.pop("enabled", None)
    if isinstance(data.get("snooze_until"), (int, float)):
        data["snooze_until"] = datetime.fromtimestamp(data["snooze_until"], tz=timezone.utc)

    cadence = data.get("cadence")
    if cadence is None:
        folded = {key: data.pop(key) for key in _CADENCE_FIELDS if key in data}
        folded = {key: value for key, value in folded.items() if value is not None}
        if folded:
            data["cadence"] = folded
    return data
