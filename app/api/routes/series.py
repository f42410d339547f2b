# app/api/routes/series.py
from datetime import date as date_type
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import to_http_exception
from app.core.clock import Clock, get_clock
from app.core.exceptions import OccurrenceEngineError
from app.db.session import get_db
from app.models.appointment import Appointment
from app.models.appointment_series import AppointmentSeries
from app.schemas.appointment import AppointmentRead, AppointmentStatus
from app.schemas.series import (
    EditScope,
    SeriesActiveResult,
    SeriesActiveUpdate,
    SeriesCancelRequest,
    SeriesCancelResult,
    SeriesCreate,
    SeriesCreateResponse,
    SeriesEdit,
    SeriesEditResult,
    SeriesRead,
)
from app.services.calendar_sync import CalendarSyncNotifier, get_calendar_sync
from app.services.deactivation import set_series_active
from app.services.series_editor import apply_series_edit, cancel_occurrences, create_series
from app.services.time_conversion import end_of_local_day, start_of_local_day

router = APIRouter(prefix="/series", tags=["Series"])


async def _get_series_or_404(db: AsyncSession, series_id: str) -> AppointmentSeries:
    result = await db.execute(select(AppointmentSeries).where(AppointmentSeries.id == series_id))
    series = result.scalar_one_or_none()
    if series is None:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail=f"Appointment series {series_id} not found.",
        )
    return series


@router.post(
    "",
    response_model=SeriesCreateResponse,
    status_code=HTTPStatus.CREATED,
    summary="Create a recurring appointment series",
    description=(
        "Stores a new series and immediately materialises its first window of "
        "occurrences.\n\n"
        "The rule text is anchored to `start_date` + `local_start_time` in "
        "`timezone`; every occurrence keeps that local wall-clock time across "
        "DST changes."
    ),
    responses={
        201: {"description": "Series created; the initial generation result is included."},
        422: {"description": "Invalid recurrence rule, date/time or timezone."},
    },
)
async def create_series_endpoint(
    payload: SeriesCreate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync: CalendarSyncNotifier = Depends(get_calendar_sync),
) -> SeriesCreateResponse:
    try:
        series, generation = await create_series(db, payload, clock=clock, sync=sync)
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc

    return SeriesCreateResponse(series=SeriesRead.model_validate(series), generation=generation)


@router.get(
    "",
    response_model=list[SeriesRead],
    summary="List series",
)
async def list_series(
    tenant_id: str | None = Query(default=None, description="Only series of this tenant."),
    only_active: bool | None = Query(
        default=None,
        description="true -> active only, false -> inactive only, omitted -> all.",
    ),
    db: AsyncSession = Depends(get_db),
) -> list[SeriesRead]:
    stmt = select(AppointmentSeries)
    if tenant_id is not None:
        stmt = stmt.where(AppointmentSeries.tenant_id == tenant_id)
    if only_active is True:
        stmt = stmt.where(AppointmentSeries.active.is_(True))
    elif only_active is False:
        stmt = stmt.where(AppointmentSeries.active.is_(False))

    result = await db.execute(stmt.order_by(AppointmentSeries.created_at.asc()))
    return [SeriesRead.model_validate(s) for s in result.scalars().all()]


@router.get(
    "/{series_id}",
    response_model=SeriesRead,
    summary="Get a series by id",
    responses={404: {"description": "Series not found."}},
)
async def get_series(
    series_id: str = Path(..., description="Series identifier."),
    db: AsyncSession = Depends(get_db),
) -> SeriesRead:
    return SeriesRead.model_validate(await _get_series_or_404(db, series_id))


@router.get(
    "/{series_id}/appointments",
    response_model=list[AppointmentRead],
    summary="List the materialised occurrences of a series",
    description=(
        "Occurrences ordered by start. `from_date` / `to_date` are calendar days "
        "in the series' own timezone (both inclusive)."
    ),
    responses={404: {"description": "Series not found."}},
)
async def list_series_appointments(
    series_id: str = Path(..., description="Series identifier."),
    from_date: date_type | None = Query(default=None, examples=["2025-01-01"]),
    to_date: date_type | None = Query(default=None, examples=["2025-01-31"]),
    status: AppointmentStatus | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> list[AppointmentRead]:
    series = await _get_series_or_404(db, series_id)

    conditions = [Appointment.series_id == series.id]
    if from_date is not None:
        conditions.append(Appointment.start_at >= start_of_local_day(from_date, series.timezone))
    if to_date is not None:
        conditions.append(Appointment.start_at <= end_of_local_day(to_date, series.timezone))
    if status is not None:
        conditions.append(Appointment.status == status.value)

    result = await db.execute(
        select(Appointment).where(*conditions).order_by(Appointment.start_at.asc())
    )
    return [AppointmentRead.model_validate(a) for a in result.scalars().all()]


@router.patch(
    "/{series_id}",
    response_model=SeriesEditResult,
    summary="Edit a series, one occurrence, or an occurrence and all that follow",
    description=(
        "Only the fields present in the body are considered.\n\n"
        "- `this_only`: the occurrence given by `occurrence_id` is detached from "
        "the series and edited alone.\n"
        "- `this_and_future`: the series is split at `occurrence_id`; scheduled "
        "occurrences from there on are regenerated.\n"
        "- `entire_series`: every scheduled occurrence is regenerated.\n\n"
        "Documented or cancelled occurrences are never modified."
    ),
    responses={
        404: {"description": "Series or occurrence not found."},
        409: {"description": "The occurrence is already in a terminal status."},
        422: {"description": "Invalid rule, time input or scope."},
    },
)
async def edit_series(
    edit: SeriesEdit,
    series_id: str = Path(..., description="Series identifier."),
    scope: EditScope = Query(default=EditScope.ENTIRE_SERIES),
    occurrence_id: str | None = Query(
        default=None,
        description="Occurrence the edit was made on; required for this_only and this_and_future.",
    ),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync: CalendarSyncNotifier = Depends(get_calendar_sync),
) -> SeriesEditResult:
    try:
        return await apply_series_edit(
            db,
            series_id,
            edit,
            scope,
            occurrence_id,
            clock=clock,
            sync=sync,
        )
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/{series_id}/cancel",
    response_model=SeriesCancelResult,
    summary="Cancel one occurrence, the rest of the series, or the whole series",
    responses={
        404: {"description": "Series or occurrence not found."},
        409: {"description": "The occurrence is already in a terminal status."},
    },
)
async def cancel_series_occurrences(
    payload: SeriesCancelRequest,
    series_id: str = Path(..., description="Series identifier."),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync: CalendarSyncNotifier = Depends(get_calendar_sync),
) -> SeriesCancelResult:
    try:
        return await cancel_occurrences(
            db,
            series_id,
            payload.scope,
            payload.occurrence_id,
            clock=clock,
            sync=sync,
        )
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc


@router.put(
    "/{series_id}/active",
    response_model=SeriesActiveResult,
    summary="Activate or deactivate a series",
    description=(
        "Deactivating cancels every future scheduled occurrence; reactivating "
        "generates the next window."
    ),
    responses={404: {"description": "Series not found."}},
)
async def update_series_active(
    payload: SeriesActiveUpdate,
    series_id: str = Path(..., description="Series identifier."),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync: CalendarSyncNotifier = Depends(get_calendar_sync),
) -> SeriesActiveResult:
    try:
        return await set_series_active(db, series_id, payload.active, clock=clock, sync=sync)
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc
