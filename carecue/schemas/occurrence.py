"""Occurrence (history entry) schemas."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from carecue.schemas.reminder import as_utc

LOCAL_ID_PREFIX = "local-"


class OccurrenceStatus(str, Enum):
    """Outcome recorded for one due instant."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    MISSED = "missed"
    SNOOZED = "snoozed"


class Occurrence(BaseModel):
    """One concrete due instant of a reminder and what happened to it.

    Occurrences are append-only: once recorded they are never edited.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    reminder_id: str
    scheduled_time: datetime
    status: OccurrenceStatus
    recorded_time: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data: Any) -> Any:
        # The medication history endpoint uses medication_id/time/created_at
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "reminder_id" not in data:
            for key in ("medication_id", "medId", "med_id"):
                if key in data:
                    data["reminder_id"] = data.pop(key)
                    break
        if "scheduled_time" not in data and "time" in data:
            data["scheduled_time"] = data.pop("time")
        if "recorded_time" not in data and "created_at" in data:
            data["recorded_time"] = data.pop("created_at")
        return data

    @field_validator("id", "reminder_id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("scheduled_time", "recorded_time")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def is_local(self) -> bool:
        """True for entries recorded locally that the server has not echoed back yet."""
        return self.id.startswith(LOCAL_ID_PREFIX)


class OccurrenceCreate(BaseModel):
    """Body for recording an occurrence on the remote service."""

    status: OccurrenceStatus
    time: datetime
