# app/services/deactivation.py
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, SystemClock
from app.core.exceptions import InvalidStatusTransition, OccurrenceNotFound, StorageError
from app.models.appointment import Appointment
from app.schemas.appointment import AppointmentStatus
from app.schemas.generation import DeactivationResult
from app.schemas.series import SeriesActiveResult
from app.services.calendar_sync import (
    CalendarSyncNotifier,
    OccurrenceEventType,
    event_for,
    get_calendar_sync,
)
from app.services.occurrence_generator import generate_occurrences, load_series

logger = logging.getLogger(__name__)


async def deactivate_series(
    db: AsyncSession,
    series_id: str,
    *,
    clock: Clock | None = None,
    sync: CalendarSyncNotifier | None = None,
) -> DeactivationResult:
    """
    Mark a series inactive and cancel its future scheduled occurrences.

    Behavior
    --------
    - `active` becomes False.
    - Every occurrence still `scheduled` with `start_at` after now becomes
      `cancelled`.
    - Past occurrences and occurrences in a terminal status are left alone.
    - Running it again cancels nothing further.
    """
    clock = clock or SystemClock()
    sync = sync or get_calendar_sync()

    series = await load_series(db, series_id)
    now = clock.now()

    try:
        result = await db.execute(
            select(Appointment).where(
                Appointment.series_id == series.id,
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.start_at > now,
            )
        )
        upcoming = list(result.scalars().all())

        series.active = False
        for appointment in upcoming:
            appointment.status = AppointmentStatus.CANCELLED.value

        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(f"Failed to deactivate series {series_id}: {exc}") from exc

    sync.publish([event_for(OccurrenceEventType.CANCELLED, a) for a in upcoming])

    logger.info("Deactivated series %s; cancelled %d occurrence(s)", series_id, len(upcoming))
    return DeactivationResult(series_id=series_id, cancelled=len(upcoming))


async def set_series_active(
    db: AsyncSession,
    series_id: str,
    active: bool,
    *,
    clock: Clock | None = None,
    sync: CalendarSyncNotifier | None = None,
) -> SeriesActiveResult:
    """
    Flip the series' active flag.

    Deactivating runs the cascade; reactivating extends the series by one
    generation window. Setting the current value again is a no-op.
    """
    series = await load_series(db, series_id)

    if not active:
        if not series.active:
            return SeriesActiveResult(series_id=series_id, active=False)
        outcome = await deactivate_series(db, series_id, clock=clock, sync=sync)
        return SeriesActiveResult(series_id=series_id, active=False, cancelled=outcome.cancelled)

    if series.active:
        return SeriesActiveResult(series_id=series_id, active=True)

    series.active = True
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(f"Failed to reactivate series {series_id}: {exc}") from exc

    logger.info("Reactivated series %s", series_id)
    generation = await generate_occurrences(db, series_id, clock=clock, sync=sync)
    return SeriesActiveResult(series_id=series_id, active=True, generation=generation)


async def update_occurrence_status(
    db: AsyncSession,
    appointment_id: str,
    status: AppointmentStatus,
    *,
    sync: CalendarSyncNotifier | None = None,
) -> Appointment:
    """
    Staff-driven status change (e.g. marking a session documented).

    Only `scheduled` occurrences can move; re-sending the current status is
    accepted without a write.
    """
    sync = sync or get_calendar_sync()
    status = AppointmentStatus(status)

    try:
        result = await db.execute(select(Appointment).where(Appointment.id == appointment_id))
        appointment = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to load appointment {appointment_id}: {exc}") from exc

    if appointment is None:
        raise OccurrenceNotFound(appointment_id)

    current = AppointmentStatus(appointment.status)
    if current == status:
        return appointment
    if current.is_terminal:
        raise InvalidStatusTransition(
            f"Appointment {appointment_id} is {current.value}; it cannot become {status.value}."
        )

    appointment.status = status.value
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(f"Failed to update appointment {appointment_id}: {exc}") from exc

    event_type = (
        OccurrenceEventType.CANCELLED
        if status in (AppointmentStatus.CANCELLED, AppointmentStatus.LATE_CANCEL_NOSHOW)
        else OccurrenceEventType.UPDATED
    )
    sync.publish([event_for(event_type, appointment)])
    return appointment
