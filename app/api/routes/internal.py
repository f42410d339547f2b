# app/api/routes/internal.py
import asyncio
import logging
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.internal_auth import verify_internal_api_key
from app.api.errors import to_http_exception
from app.core.clock import Clock, get_clock
from app.core.config import get_settings
from app.core.exceptions import OccurrenceEngineError
from app.db.session import get_db
from app.schemas.generation import (
    BatchGenerationSummary,
    DeactivationResult,
    GenerationRequest,
    GenerationResult,
)
from app.services.calendar_sync import CalendarSyncNotifier, get_calendar_sync
from app.services.deactivation import deactivate_series
from app.services.occurrence_generator import generate_for_active_series, generate_occurrences

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["Internal"],
    dependencies=[Depends(verify_internal_api_key)],
)


async def _with_timeout(coro, what: str):
    timeout = get_settings().GENERATION_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("%s timed out after %.1fs", what, timeout)
        raise HTTPException(
            status_code=HTTPStatus.GATEWAY_TIMEOUT,
            detail=f"{what} did not finish within {timeout:g} seconds; it is safe to retry.",
        ) from exc


@router.post(
    "/generate-occurrences",
    response_model=GenerationResult,
    response_model_by_alias=True,
    status_code=HTTPStatus.OK,
    summary="Materialise occurrences of one series",
    description=(
        "Generates the occurrences of a single series for a bounded window.\n\n"
        "Intended for schedulers and for the UI right after a series is saved. "
        "The call is idempotent: instants that already exist are reported as "
        "`skipped`, never duplicated.\n\n"
        "The window starts at `fromDate` (or now) or just after the series "
        "watermark, whichever is later, and spans `monthsAhead` months, clamped "
        "by the series end date and a one-year hard ceiling."
    ),
    responses={
        200: {
            "description": "Generation finished (possibly with skipped instants).",
            "content": {
                "application/json": {
                    "example": {
                        "created": 12,
                        "skipped": 0,
                        "lastGeneratedUntil": "2025-01-31T15:00:00Z",
                    }
                }
            },
        },
        401: {"description": "Missing or invalid internal API key (if configured)."},
        404: {"description": "Series not found."},
        422: {"description": "Invalid recurrence rule or time input."},
        504: {"description": "Generation exceeded GENERATION_TIMEOUT_SECONDS."},
    },
)
async def trigger_generation(
    payload: GenerationRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync: CalendarSyncNotifier = Depends(get_calendar_sync),
) -> GenerationResult:
    try:
        return await _with_timeout(
            generate_occurrences(
                db,
                payload.series_id,
                months_ahead=payload.months_ahead,
                from_date=payload.from_date,
                max_occurrences=payload.max_occurrences,
                clock=clock,
                sync=sync,
            ),
            f"Generation for series {payload.series_id}",
        )
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/generate-all",
    response_model=BatchGenerationSummary,
    status_code=HTTPStatus.OK,
    summary="Extend every active series by one generation window",
    description=(
        "Periodic job endpoint (cron, CI/CD, ...). Runs generation for every "
        "active series; a failing series is reported in `entries` and does not "
        "stop the others."
    ),
    responses={
        401: {"description": "Missing or invalid internal API key (if configured)."},
        504: {"description": "The batch exceeded GENERATION_TIMEOUT_SECONDS."},
    },
)
async def trigger_generation_for_all(
    months_ahead: int | None = Query(
        default=None,
        ge=1,
        le=12,
        description="Horizon in months; defaults to DEFAULT_MONTHS_AHEAD.",
    ),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync: CalendarSyncNotifier = Depends(get_calendar_sync),
) -> BatchGenerationSummary:
    try:
        return await _with_timeout(
            generate_for_active_series(db, months_ahead=months_ahead, clock=clock, sync=sync),
            "Batch generation",
        )
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/series/{series_id}/deactivate",
    response_model=DeactivationResult,
    status_code=HTTPStatus.OK,
    summary="Deactivate a series and cancel its future scheduled occurrences",
    description=(
        "Sets `active=false` and moves every future `scheduled` occurrence to "
        "`cancelled`. Documented, cancelled and past occurrences are untouched. "
        "Calling it again has no further effect."
    ),
    responses={
        200: {
            "description": "Series deactivated.",
            "content": {
                "application/json": {
                    "example": {"series_id": "4f7c1d7e-2a7b-4c1e-9d55-0c3f4c8a1b20", "cancelled": 3}
                }
            },
        },
        404: {"description": "Series not found."},
    },
)
async def trigger_deactivation(
    series_id: str = Path(..., description="Series identifier."),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync: CalendarSyncNotifier = Depends(get_calendar_sync),
) -> DeactivationResult:
    try:
        return await deactivate_series(db, series_id, clock=clock, sync=sync)
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc
