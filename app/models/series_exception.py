# app/models/series_exception.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, String, Text, UniqueConstraint

from app.db.base import Base
from app.db.types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SeriesException(Base):
    """
    Records that one instant of a series was rescheduled away or cancelled.

    The occurrence generator never re-materialises an `original_start_at`
    listed here.
    """

    __tablename__ = "appointment_series_exceptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    tenant_id = Column(String(64), nullable=False, index=True)
    series_id = Column(
        String(36),
        ForeignKey("appointment_series.id"),
        nullable=False,
        index=True,
    )
    original_start_at = Column(UTCDateTime(), nullable=False)
    change_type = Column(String(32), nullable=False)
    replacement_appointment_id = Column(String(36), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "series_id",
            "original_start_at",
            name="uq_series_exceptions_series_start",
        ),
    )
