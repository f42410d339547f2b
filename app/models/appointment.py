# app/models/appointment.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.db.types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Appointment(Base):
    """
    One materialised appointment instant.

    Rows with a `series_id` were produced by the occurrence generator; rows
    without one are standalone appointments (including occurrences detached
    from their series by a "this only" edit).
    """

    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    tenant_id = Column(String(64), nullable=False, index=True)
    series_id = Column(
        String(36),
        ForeignKey("appointment_series.id"),
        nullable=True,
        index=True,
    )
    client_id = Column(String(64), nullable=False, index=True)
    staff_id = Column(String(64), nullable=False, index=True)
    service_id = Column(String(64), nullable=True)

    start_at = Column(UTCDateTime(), nullable=False, index=True)
    end_at = Column(UTCDateTime(), nullable=False)
    timezone = Column(String(64), nullable=False)

    status = Column(String(32), nullable=False, default="scheduled")

    # Per-occurrence display overrides; never part of the identity key.
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    cost = Column(Numeric(10, 2), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)

    series = relationship("AppointmentSeries", backref="appointments")

    __table_args__ = (
        UniqueConstraint(
            "series_id",
            "start_at",
            name="uq_appointments_series_start",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Appointment id={self.id} series_id={self.series_id} "
            f"start_at={self.start_at} status={self.status}>"
        )
