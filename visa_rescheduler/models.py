"""
Pydantic models for the slot rescheduling domain.

Slots, reschedule outcomes and the shared activity state.

Pydantic-модели слотов, результатов переноса и общего состояния.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

UNBOOKED = "UNBOOKED"


class DateWindow(BaseModel):
    """Inclusive calendar bounds for acceptable appointments."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def _date_part(value: Any) -> Any:
    if isinstance(value, str) and len(value) > 10:
        return value[:10]
    return value


def _to_utc_time(value: Any, day: Optional[date] = None) -> Any:
    """
    Accept "HH:MM[:SS]" with an optional offset, or a full ISO timestamp.

    Anything carrying an offset is moved to UTC on `day`; the result is naive.
    """
    if isinstance(value, time):
        clock = value
    elif not isinstance(value, str):
        return value
    else:
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        if "T" in raw:
            parsed = datetime.fromisoformat(raw)
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc)
            return parsed.time().replace(tzinfo=None)
        clock = time.fromisoformat(raw)
    if clock.tzinfo is None:
        return clock
    parsed = datetime.combine(day or date.today(), clock)
    return parsed.astimezone(timezone.utc).time().replace(tzinfo=None)


class Slot(BaseModel):
    """Single candidate slot as returned by getSlotTimes."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    slot_id: int | str = Field(alias="slotId")
    slot_date: date = Field(alias="slotDate")
    start_time: time = Field(alias="startTime")
    status: str = Field(default="", alias="slotStatus")

    @field_validator("slot_date", mode="before")
    @classmethod
    def _normalise_date(cls, value: Any) -> Any:
        return _date_part(value)

    @field_validator("start_time", mode="before")
    @classmethod
    def _normalise_time(cls, value: Any, info: ValidationInfo) -> Any:
        return _to_utc_time(value, info.data.get("slot_date"))

    @property
    def is_unbooked(self) -> bool:
        return self.status.upper() == UNBOOKED

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.start_time)


class OutcomeKind(str, Enum):
    SCHEDULED = "scheduled"
    CONFLICT = "conflict"
    ERROR = "error"


class RescheduleOutcome(BaseModel):
    """Result of a single reschedule attempt, or of a whole candidate."""

    kind: OutcomeKind
    slot_id: int | str
    detail: Optional[str] = None
    attempts: int = 1

    @classmethod
    def scheduled(cls, slot_id: int | str, **kwargs: Any) -> "RescheduleOutcome":
        return cls(kind=OutcomeKind.SCHEDULED, slot_id=slot_id, **kwargs)

    @classmethod
    def conflict(cls, slot_id: int | str, **kwargs: Any) -> "RescheduleOutcome":
        return cls(kind=OutcomeKind.CONFLICT, slot_id=slot_id, **kwargs)

    @classmethod
    def error(cls, slot_id: int | str, detail: str, **kwargs: Any) -> "RescheduleOutcome":
        return cls(kind=OutcomeKind.ERROR, slot_id=slot_id, detail=detail, **kwargs)

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.SCHEDULED


class ActivityState(BaseModel):
    """Process-wide activity flags; written by the scheduler and coordinator only."""

    polling: bool = False
    rescheduling: bool = False
    ticks_count: int = 0
    last_tick_at: Optional[datetime] = None
    attempts_total: int = 0
    last_error: Optional[str] = None
    scheduled_slot_id: Optional[int | str] = None


class StatusSnapshot(BaseModel):
    """Read-only view handed to the status reporter."""

    model_config = ConfigDict(frozen=True)

    polling: bool
    rescheduling: bool
    ticks_count: int
    attempts_total: int
    last_tick_at: Optional[datetime] = None
    last_error: Optional[str] = None
    scheduled_slot_id: Optional[int | str] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "ActivityState",
    "DateWindow",
    "OutcomeKind",
    "RescheduleOutcome",
    "Slot",
    "StatusSnapshot",
    "UNBOOKED",
]
