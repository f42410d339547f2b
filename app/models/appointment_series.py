# app/models/appointment_series.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    Integer,
    String,
    Text,
    Time,
)

from app.db.base import Base
from app.db.types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class AppointmentSeries(Base):
    """
    Recurrence definition for a run of appointments.

    The rule text is always anchored to `start_date` + `local_start_time`
    interpreted in `timezone`. `last_generated_until` is the watermark
    through which occurrences have already been materialised; it only moves
    forward. Rows already materialised behind it are not revisited, so a
    regeneration that leaves a hole records `pending_regeneration_from`
    instead.
    """

    __tablename__ = "appointment_series"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    tenant_id = Column(String(64), nullable=False, index=True)
    client_id = Column(String(64), nullable=False, index=True)
    staff_id = Column(String(64), nullable=False, index=True)
    service_id = Column(String(64), nullable=True)
    title = Column(String(255), nullable=True)

    start_date = Column(Date, nullable=False)
    local_start_time = Column(Time, nullable=False)
    timezone = Column(String(64), nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    rrule = Column(Text, nullable=False)
    until_date = Column(Date, nullable=True)
    max_occurrences = Column(Integer, nullable=True)

    active = Column(Boolean, nullable=False, default=True)
    last_generated_until = Column(UTCDateTime(), nullable=True)
    # Earliest instant a regeneration failed to write; the next run resumes here.
    pending_regeneration_from = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<AppointmentSeries id={self.id} rrule={self.rrule!r} "
            f"start={self.start_date} {self.local_start_time} {self.timezone} "
            f"active={self.active}>"
        )
