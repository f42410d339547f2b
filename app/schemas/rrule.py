# app/schemas/rrule.py
from __future__ import annotations

from datetime import date, datetime, time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Frequency(str, Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class MonthlyType(str, Enum):
    """
    Which monthly pattern a MONTHLY rule uses.

    DAY      -> fixed day of month (BYMONTHDAY)
    WEEKDAY  -> Nth weekday of month (BYDAY + BYSETPOS)
    """

    DAY = "day"
    WEEKDAY = "weekday"


WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
SET_POSITIONS = (1, 2, 3, 4, -1)


class RecurrenceConfig(BaseModel):
    """
    Structured recurrence configuration edited by the scheduling UI.

    Weekdays are numbered 0 (Monday) through 6 (Sunday). `set_position` is the
    ordinal of the weekday within the month; -1 means "last".
    """

    model_config = ConfigDict(use_enum_values=False)

    frequency: Frequency = Field(
        default=Frequency.WEEKLY,
        description="Recurrence frequency.",
        examples=["WEEKLY"],
    )
    interval: int = Field(
        default=1,
        ge=1,
        description="Repeat every N weeks/months.",
        examples=[1],
    )
    weekdays: list[int] | None = Field(
        default=None,
        description="WEEKLY only: weekdays (0=Mon..6=Sun) the appointment repeats on.",
        examples=[[0, 2, 4]],
    )
    monthly_type: MonthlyType | None = Field(
        default=None,
        description="MONTHLY only: 'day' (day of month) or 'weekday' (Nth weekday).",
    )
    month_day: int | None = Field(
        default=None,
        ge=1,
        le=31,
        description="MONTHLY 'day' pattern: day of the month.",
    )
    set_position: int | None = Field(
        default=None,
        description="MONTHLY 'weekday' pattern: 1, 2, 3, 4 or -1 (last).",
    )
    month_weekday: int | None = Field(
        default=None,
        ge=0,
        le=6,
        description="MONTHLY 'weekday' pattern: weekday (0=Mon..6=Sun).",
    )
    until: date | None = Field(
        default=None,
        description="Optional last calendar date of the recurrence.",
        examples=["2025-06-30"],
    )

    @field_validator("weekdays")
    @classmethod
    def _normalise_weekdays(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return None
        if not value:
            raise ValueError("weekdays must be non-empty when provided")
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("weekdays must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(value))

    @field_validator("set_position")
    @classmethod
    def _check_set_position(cls, value: int | None) -> int | None:
        if value is not None and value not in SET_POSITIONS:
            raise ValueError("set_position must be one of 1, 2, 3, 4 or -1 (last)")
        return value

    @model_validator(mode="after")
    def _check_pattern(self) -> "RecurrenceConfig":
        monthly_fields = (self.monthly_type, self.month_day, self.set_position, self.month_weekday)

        if self.frequency == Frequency.WEEKLY:
            if any(field is not None for field in monthly_fields):
                raise ValueError("WEEKLY rules cannot carry monthly pattern fields")
            return self

        if self.weekdays is not None:
            raise ValueError("MONTHLY rules cannot carry a weekday set")
        if self.monthly_type == MonthlyType.WEEKDAY:
            if self.set_position is None or self.month_weekday is None:
                raise ValueError("monthly 'weekday' pattern needs set_position and month_weekday")
            if self.month_day is not None:
                raise ValueError("monthly 'weekday' pattern cannot carry month_day")
        elif self.monthly_type == MonthlyType.DAY:
            if self.month_day is None:
                raise ValueError("monthly 'day' pattern needs month_day")
            if self.set_position is not None or self.month_weekday is not None:
                raise ValueError("monthly 'day' pattern cannot carry weekday fields")
        elif any(field is not None for field in monthly_fields):
            raise ValueError("monthly_type is required when monthly pattern fields are set")
        return self


class RuleTextRequest(BaseModel):
    rrule: str = Field(
        ...,
        description="Recurrence rule text (RRULE body, optional 'RRULE:' prefix).",
        examples=["FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR"],
    )


class RuleBuildResponse(BaseModel):
    rrule: str = Field(..., description="Rule text produced from the configuration.")
    description: str = Field(..., description="Human readable summary of the rule.")
    config: RecurrenceConfig


class RulePreviewRequest(BaseModel):
    rrule: str = Field(..., examples=["FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR"])
    start_date: date = Field(..., examples=["2025-01-06"])
    local_start_time: time = Field(default=time(9, 0), examples=["09:00:00"])
    timezone: str = Field(default="UTC", examples=["America/Chicago"])


class RulePreviewResponse(BaseModel):
    occurrences: list[datetime] = Field(
        ...,
        description="Upcoming local instants (bounded horizon and count).",
    )
    message: str = Field(..., examples=["Next occurrences: Mon Jan 6, Wed Jan 8, Fri Jan 10"])
