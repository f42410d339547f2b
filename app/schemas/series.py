# app/schemas/series.py

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.generation import GenerationResult


class EditScope(str, Enum):
    """
    How far a series edit reaches.

    THIS_ONLY        detach one occurrence and edit it alone
    THIS_AND_FUTURE  split the series at the occurrence; regenerate from there
    ENTIRE_SERIES    change the definition and regenerate every scheduled occurrence
    """

    THIS_ONLY = "this_only"
    THIS_AND_FUTURE = "this_and_future"
    ENTIRE_SERIES = "entire_series"


# --------------------------------------------------------------------------
# Base schema shared by create/read
# --------------------------------------------------------------------------

class SeriesBase(BaseModel):
    tenant_id: str = Field(..., examples=["tenant-1"])
    client_id: str = Field(..., examples=["client-42"])
    staff_id: str = Field(..., examples=["staff-7"])
    service_id: str | None = Field(default=None, examples=["svc-90837"])
    title: str | None = Field(default=None, examples=["Weekly therapy"])

    start_date: date = Field(
        ...,
        description="Anchor calendar date of the series (local to `timezone`).",
        examples=["2025-01-06"],
    )
    local_start_time: time = Field(
        ...,
        description="Wall-clock start time every occurrence keeps.",
        examples=["09:00:00"],
    )
    timezone: str = Field(..., description="IANA zone name.", examples=["America/Chicago"])
    duration_minutes: int = Field(..., ge=1, le=24 * 60, examples=[50])

    rrule: str = Field(
        ...,
        description="Recurrence rule text anchored to start_date + local_start_time.",
        examples=["FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR"],
    )
    until_date: date | None = Field(default=None, description="Optional hard end date (inclusive).")
    max_occurrences: int | None = Field(default=None, ge=1, description="Optional count cap.")


# --------------------------------------------------------------------------
# Create schema (POST /series)
# --------------------------------------------------------------------------

class SeriesCreate(SeriesBase):
    active: bool = Field(default=True)


# --------------------------------------------------------------------------
# Edit schema (PATCH /series/{id})
# --------------------------------------------------------------------------

class SeriesEdit(BaseModel):
    """
    Partial edit of a series or of one of its occurrences.

    Only fields that are explicitly sent are compared; the scheduling fields
    (`start_date`, `local_start_time`, `duration_minutes`, `timezone`,
    `rrule`, `until_date`) decide whether occurrences are regenerated.
    `description` and `cost` are per-occurrence overrides and are only
    applied by the this_only scope.
    """

    start_date: date | None = None
    local_start_time: time | None = None
    duration_minutes: int | None = Field(default=None, ge=1, le=24 * 60)
    timezone: str | None = None
    rrule: str | None = None
    until_date: date | None = None

    client_id: str | None = None
    staff_id: str | None = None
    service_id: str | None = None
    title: str | None = None

    description: str | None = None
    cost: Decimal | None = None


# --------------------------------------------------------------------------
# Read schema
# --------------------------------------------------------------------------

class SeriesRead(SeriesBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    active: bool
    last_generated_until: datetime | None = None
    pending_regeneration_from: datetime | None = Field(
        default=None,
        description="Set while a regeneration still has instants to refill.",
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SeriesCreateResponse(BaseModel):
    series: SeriesRead
    generation: GenerationResult


class SeriesEditResult(BaseModel):
    series_id: str
    scope: EditScope
    changed_fields: list[str] = Field(default_factory=list)
    regenerated: bool = False
    removed: int = Field(0, description="Scheduled occurrences removed before regeneration.")
    detached_appointment_id: str | None = None
    generation: GenerationResult | None = None


class SeriesCancelRequest(BaseModel):
    scope: EditScope = Field(default=EditScope.THIS_ONLY)
    occurrence_id: str | None = Field(
        default=None,
        description="Required for this_only and this_and_future.",
    )


class SeriesCancelResult(BaseModel):
    series_id: str
    scope: EditScope
    cancelled: int = 0


class SeriesActiveUpdate(BaseModel):
    active: bool


class SeriesActiveResult(BaseModel):
    series_id: str
    active: bool
    cancelled: int = 0
    generation: GenerationResult | None = None
