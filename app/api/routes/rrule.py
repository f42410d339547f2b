# app/api/routes/rrule.py
from datetime import date as date_type, time as time_type

from fastapi import APIRouter, Query
from pydantic import BaseModel

from app.api.errors import to_http_exception
from app.core.exceptions import OccurrenceEngineError
from app.schemas.rrule import (
    RecurrenceConfig,
    RuleBuildResponse,
    RulePreviewRequest,
    RulePreviewResponse,
    RuleTextRequest,
)
from app.services.rrule_builder import (
    describe,
    from_rule_text,
    preview_message,
    preview_occurrences,
    to_rule_text,
)
from app.services.time_conversion import WallClockKind, describe_wall_clock

router = APIRouter(prefix="/rrule", tags=["Recurrence rules"])


class WallClockResponse(BaseModel):
    kind: WallClockKind


@router.post(
    "/build",
    response_model=RuleBuildResponse,
    summary="Turn a recurrence configuration into rule text",
)
async def build_rule(config: RecurrenceConfig) -> RuleBuildResponse:
    return RuleBuildResponse(rrule=to_rule_text(config), description=describe(config), config=config)


@router.post(
    "/parse",
    response_model=RuleBuildResponse,
    summary="Read rule text back into a recurrence configuration",
    description=(
        "Unsupported or malformed text yields the default configuration "
        "(weekly, every week) so the editor always has something to show."
    ),
)
async def parse_rule_text(payload: RuleTextRequest) -> RuleBuildResponse:
    config = from_rule_text(payload.rrule)
    return RuleBuildResponse(rrule=to_rule_text(config), description=describe(config), config=config)


@router.post(
    "/preview",
    response_model=RulePreviewResponse,
    summary="Preview the next few occurrences of a rule",
    description=(
        "Evaluates at most PREVIEW_HORIZON_MONTHS months and returns at most "
        "PREVIEW_COUNT local instants. Invalid rules return an empty list."
    ),
)
async def preview_rule(payload: RulePreviewRequest) -> RulePreviewResponse:
    occurrences = preview_occurrences(
        payload.rrule,
        payload.start_date,
        payload.local_start_time,
        payload.timezone,
    )
    return RulePreviewResponse(occurrences=occurrences, message=preview_message(occurrences))


@router.get(
    "/wall-clock",
    response_model=WallClockResponse,
    summary="Check whether a local time exists, is skipped or repeats in a zone",
    responses={422: {"description": "Malformed date/time or unknown timezone."}},
)
async def check_wall_clock(
    local_date: date_type = Query(..., alias="date", examples=["2025-03-09"]),
    local_time: time_type = Query(..., alias="time", examples=["02:30:00"]),
    timezone: str = Query(..., examples=["America/Chicago"]),
) -> WallClockResponse:
    try:
        return WallClockResponse(kind=describe_wall_clock(local_date, local_time, timezone))
    except OccurrenceEngineError as exc:
        raise to_http_exception(exc) from exc
