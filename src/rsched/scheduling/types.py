"""Scheduling domain types."""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from rsched.scheduling.errors import InvalidSchedule
from rsched.scheduling.timezone import parse_hhmm

ScheduleType = Literal["once", "daily", "weekly", "biweekly", "monthly"]
RunStatus = Literal["running", "completed", "failed"]

SCHEDULE_TYPES: tuple[str, ...] = ("once", "daily", "weekly", "biweekly", "monthly")


class _RecurrenceBase(BaseModel):
    timezone: str = "UTC"


class _TimeOfDay(_RecurrenceBase):
    time: str  # HH:MM, wall clock in `timezone`

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        t = parse_hhmm(value)
        return f"{t.hour:02d}:{t.minute:02d}"


class OnceData(_RecurrenceBase):
    schedule_type: Literal["once"] = "once"
    date_time: str = Field(min_length=1)


class DailyData(_TimeOfDay):
    schedule_type: Literal["daily"] = "daily"


class WeeklyData(_TimeOfDay):
    schedule_type: Literal["weekly"] = "weekly"
    day_of_week: int = Field(ge=0, le=6)  # 0=Sunday


class BiweeklyData(_TimeOfDay):
    schedule_type: Literal["biweekly"] = "biweekly"
    day_of_week: int = Field(ge=0, le=6)
    start_date: date


class MonthlyData(_TimeOfDay):
    schedule_type: Literal["monthly"] = "monthly"
    day_of_month: int = Field(ge=1, le=31)


ScheduleData = Annotated[
    Union[OnceData, DailyData, WeeklyData, BiweeklyData, MonthlyData],
    Field(discriminator="schedule_type"),
]

schedule_data_adapter: TypeAdapter[ScheduleData] = TypeAdapter(ScheduleData)


def parse_schedule_data(schedule_type: str, raw: dict[str, Any] | BaseModel, default_timezone: str = "UTC") -> ScheduleData:
    """Turn the untyped schedule_data mapping into its typed variant.

    The type tag comes from `schedule_type`; a missing timezone is filled
    with `default_timezone`.
    """
    if schedule_type not in SCHEDULE_TYPES:
        raise InvalidSchedule(f"Unknown schedule type: {schedule_type}", {"schedule_type": schedule_type})
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json")
    if not isinstance(raw, dict):
        raise InvalidSchedule(f"Invalid schedule data format for {schedule_type} schedule")

    data = dict(raw)
    data["schedule_type"] = schedule_type
    if not data.get("timezone"):
        data["timezone"] = default_timezone or "UTC"
    try:
        return schedule_data_adapter.validate_python(data)
    except ValidationError as err:
        fields = sorted({".".join(str(p) for p in e["loc"][1:]) or str(e["loc"][0]) for e in err.errors()})
        raise InvalidSchedule(
            f"Invalid {schedule_type} schedule data: {', '.join(fields)}",
            {"schedule_type": schedule_type, "fields": fields},
        ) from err


class Schedule(BaseModel):
    id: int
    user_id: str
    name: str
    schedule_type: ScheduleType
    schedule_data: ScheduleData
    is_active: bool = True
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    collection_id: int | None = None
    search_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ScheduleRun(BaseModel):
    id: int
    schedule_id: int
    status: RunStatus
    started_at: datetime
    completed_at: datetime | None = None
    error_msg: str | None = None
