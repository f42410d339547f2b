# app/schemas/appointment.py
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AppointmentStatus(str, Enum):
    """
    Occurrence status.

    SCHEDULED is the only non-terminal state. Automated processes (generation,
    regeneration, deactivation) never modify an occurrence once it has left it.
    """

    SCHEDULED = "scheduled"
    DOCUMENTED = "documented"
    CANCELLED = "cancelled"
    LATE_CANCEL_NOSHOW = "late_cancel/noshow"

    @property
    def is_terminal(self) -> bool:
        return self is not AppointmentStatus.SCHEDULED


class AppointmentRead(BaseModel):
    """
    Public representation of a materialised appointment.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Appointment identifier.")
    tenant_id: str
    series_id: str | None = Field(
        None,
        description="Owning series; null for standalone or detached appointments.",
    )
    client_id: str
    staff_id: str
    service_id: str | None = None
    start_at: datetime = Field(..., description="Start instant (UTC).", examples=["2025-01-06T15:00:00Z"])
    end_at: datetime = Field(..., description="End instant (UTC).", examples=["2025-01-06T15:50:00Z"])
    timezone: str = Field(..., description="Zone the instant was derived in.", examples=["America/Chicago"])
    status: AppointmentStatus
    title: str | None = None
    description: str | None = None
    cost: Decimal | None = None


class AppointmentStatusUpdate(BaseModel):
    status: AppointmentStatus = Field(..., examples=["documented"])
