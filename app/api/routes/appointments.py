# app/api/routes/appointments.py
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import to_http_exception
from app.core.exceptions import OccurrenceEngineError
from app.db.session import get_db
from app.models.appointment import Appointment
from app.schemas.appointment import AppointmentRead, AppointmentStatusUpdate
from app.services.calendar_sync import CalendarSyncNotifier, get_calendar_sync
from app.services.deactivation import update_occurrence_status

router = APIRouter(prefix="/appointments", tags=["Appointments"])


@router.get(
    "/{appointment_id}",
    response_model=AppointmentRead,
    summary="Get an appointment by id",
    responses={404: {"description": "Appointment not found."}},
)
async def get_appointment(
    appointment_id: str = Path(..., description="Appointment identifier."),
    db: AsyncSession = Depends(get_db),
) -> AppointmentRead:
    result = await db.execute(select(Appointment).where(Appointment.id == appointment_id))
    appointment = result.scalar_one_or_none()
    if appointment is None:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail=f"Appointment {appointment_id} not found.",
        )
    return AppointmentRead.model_validate(appointment)


@router.patch(
    "/{appointment_id}/status",
    response_model=AppointmentRead,
    summary="Change the status of an appointment",
    description=(
        "Moves a `scheduled` appointment to `documented`, `cancelled` or "
        "`late_cancel/noshow`. Terminal statuses cannot be left again."
    ),
    responses={
        404: {"description": "Appointment not found."},
        409: {"description": "The appointment is already in a terminal status."},
    },
)
async def change_appointment_status(
    payload: AppointmentStatusUpdate,
    appointment_id: str = Path(..., description="Appointment identifier."),
    db: AsyncSession = Depends(get_db),
    sync: CalendarSyncNotifier = Depends(get_calendar_sync),
) -> AppointmentRead:
    try:
        appointment = await update_occurrence_status(
            db, appointment_id, payload.status, sync=sync
        )
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc
    return AppointmentRead.model_validate(appointment)
