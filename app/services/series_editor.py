# app/services/series_editor.py
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, SystemClock
from app.core.exceptions import (
    InvalidEditScope,
    OccurrenceLocked,
    OccurrenceNotFound,
    StorageError,
)
from app.models.appointment import Appointment
from app.models.appointment_series import AppointmentSeries
from app.models.series_exception import SeriesException
from app.schemas.appointment import AppointmentStatus
from app.schemas.generation import GenerationResult
from app.schemas.series import (
    EditScope,
    SeriesCancelResult,
    SeriesCreate,
    SeriesEdit,
    SeriesEditResult,
)
from app.services.calendar_sync import (
    CalendarSyncNotifier,
    OccurrenceEventType,
    event_for,
    get_calendar_sync,
)
from app.services.deactivation import deactivate_series
from app.services.occurrence_generator import (
    default_policies,
    generate_occurrences,
    load_series,
    series_anchor,
)
from app.services.reschedule_detector import (
    OVERRIDE_FIELDS,
    RegenerationInstruction,
    build_instruction,
    detect_attribute_changes,
)
from app.services.rrule_builder import parse_rule
from app.services.time_conversion import start_of_local_day, utc_to_local

logger = logging.getLogger(__name__)


async def _commit(db: AsyncSession, what: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(f"Failed to {what}: {exc}") from exc


async def load_occurrence(
    db: AsyncSession,
    appointment_id: str,
    series_id: str | None = None,
) -> Appointment:
    """
    Load an appointment; with `series_id`, it must belong to that series.
    """
    try:
        result = await db.execute(select(Appointment).where(Appointment.id == appointment_id))
        appointment = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to load appointment {appointment_id}: {exc}") from exc

    if appointment is None:
        raise OccurrenceNotFound(appointment_id)
    if series_id is not None and appointment.series_id != series_id:
        raise OccurrenceNotFound(appointment_id)
    return appointment


async def _scheduled_occurrences(
    db: AsyncSession,
    series_id: str,
    *,
    from_instant: datetime | None = None,
) -> list[Appointment]:
    stmt = select(Appointment).where(
        Appointment.series_id == series_id,
        Appointment.status == AppointmentStatus.SCHEDULED.value,
    )
    if from_instant is not None:
        stmt = stmt.where(Appointment.start_at >= from_instant)
    result = await db.execute(stmt.order_by(Appointment.start_at))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
async def create_series(
    db: AsyncSession,
    payload: SeriesCreate,
    *,
    months_ahead: int | None = None,
    clock: Clock | None = None,
    sync: CalendarSyncNotifier | None = None,
) -> tuple[AppointmentSeries, GenerationResult]:
    """
    Persist a new series and materialise its first window.

    The anchor and rule are validated before the row is written.
    """
    nonexistent, ambiguous = default_policies()
    anchor = series_anchor(
        payload.start_date,
        payload.local_start_time,
        payload.timezone,
        nonexistent=nonexistent,
        ambiguous=ambiguous,
    )
    parse_rule(payload.rrule, anchor)

    series = AppointmentSeries(**payload.model_dump())
    db.add(series)
    await _commit(db, "create series")
    await db.refresh(series)

    logger.info("Created series %s (%s, %s)", series.id, series.rrule, series.timezone)

    if series.active:
        generation = await generate_occurrences(
            db,
            series.id,
            months_ahead=months_ahead,
            clock=clock,
            sync=sync,
        )
        await db.refresh(series)
    else:
        generation = GenerationResult(created=0, skipped=0, last_generated_until=None)

    return series, generation


# ---------------------------------------------------------------------------
# Edit
# ---------------------------------------------------------------------------
def _apply_definition(series: AppointmentSeries, edit: SeriesEdit, fields: list[str]) -> None:
    for field in fields:
        setattr(series, field, getattr(edit, field))


def _propagate_attributes(
    occurrences: list[Appointment],
    series: AppointmentSeries,
    fields: list[str],
) -> None:
    for occurrence in occurrences:
        for field in fields:
            setattr(occurrence, field, getattr(series, field))


async def _remove_scheduled(
    db: AsyncSession,
    occurrences: list[Appointment],
) -> list:
    """Delete the given scheduled occurrences and return their "deleted" events."""
    if not occurrences:
        return []
    events = [event_for(OccurrenceEventType.DELETED, occurrence) for occurrence in occurrences]
    await db.execute(
        delete(Appointment)
        .where(Appointment.id.in_([occurrence.id for occurrence in occurrences]))
        .execution_options(synchronize_session=False)
    )
    for occurrence in occurrences:
        db.expunge(occurrence)
    return events


async def _edit_this_only(
    db: AsyncSession,
    series: AppointmentSeries,
    occurrence: Appointment,
    edit: SeriesEdit,
    instruction: RegenerationInstruction | None,
    sync: CalendarSyncNotifier,
) -> SeriesEditResult:
    original_start = occurrence.start_at
    sent = edit.model_fields_set

    if instruction is not None:
        duration = (
            timedelta(minutes=edit.duration_minutes)
            if "duration_minutes" in instruction.changed_fields
            else occurrence.end_at - occurrence.start_at
        )
        occurrence.start_at = instruction.new_anchor
        occurrence.end_at = instruction.new_anchor + duration
        if "timezone" in instruction.changed_fields:
            occurrence.timezone = edit.timezone

    for field in detect_attribute_changes(series, edit):
        setattr(occurrence, field, getattr(edit, field))
    for field in OVERRIDE_FIELDS:
        if field in sent:
            setattr(occurrence, field, getattr(edit, field))

    # Detached: from now on a standalone appointment.
    occurrence.series_id = None
    db.add(
        SeriesException(
            tenant_id=series.tenant_id,
            series_id=series.id,
            original_start_at=original_start,
            change_type="rescheduled",
            replacement_appointment_id=occurrence.id,
        )
    )

    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise OccurrenceLocked(
            f"Occurrence at {original_start.isoformat()} of series {series.id} was already detached."
        ) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(f"Failed to detach appointment {occurrence.id}: {exc}") from exc

    sync.publish([event_for(OccurrenceEventType.UPDATED, occurrence)])
    logger.info("Detached appointment %s from series %s", occurrence.id, series.id)

    return SeriesEditResult(
        series_id=series.id,
        scope=EditScope.THIS_ONLY,
        changed_fields=list(instruction.changed_fields) if instruction else [],
        detached_appointment_id=occurrence.id,
    )


async def apply_series_edit(
    db: AsyncSession,
    series_id: str,
    edit: SeriesEdit,
    scope: EditScope,
    occurrence_id: str | None = None,
    *,
    months_ahead: int | None = None,
    clock: Clock | None = None,
    sync: CalendarSyncNotifier | None = None,
) -> SeriesEditResult:
    """
    Apply a series edit for one of the three scopes.

    Behavior
    --------
    - this_only: the occurrence is detached from the series, the edit is
      applied to it alone and an exception is recorded so the generator does
      not recreate the original instant.
    - this_and_future: the series definition is updated; scheduled
      occurrences at or after the edited one are replaced by the new
      definition. Earlier occurrences are untouched.
    - entire_series: the series definition is updated and every scheduled
      occurrence is replaced.

    Occurrences in a terminal status are never modified. Non-scheduling
    changes (client, staff, service, title) are copied onto the scheduled
    occurrences in scope without regenerating them.
    """
    scope = EditScope(scope)
    clock = clock or SystemClock()
    sync = sync or get_calendar_sync()
    nonexistent, ambiguous = default_policies()

    series = await load_series(db, series_id)
    occurrence = (
        await load_occurrence(db, occurrence_id, series_id) if occurrence_id else None
    )
    now = clock.now()

    instruction = build_instruction(
        series,
        edit,
        scope,
        occurrence,
        now=now,
        nonexistent=nonexistent,
        ambiguous=ambiguous,
    )

    if scope == EditScope.THIS_ONLY:
        return await _edit_this_only(db, series, occurrence, edit, instruction, sync)

    attribute_changes = detect_attribute_changes(series, edit)
    split_at = occurrence.start_at if scope == EditScope.THIS_AND_FUTURE else None

    try:
        in_scope = await _scheduled_occurrences(db, series.id, from_instant=split_at)
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to load occurrences of series {series.id}: {exc}") from exc

    changed_fields = list(instruction.changed_fields) if instruction else []
    _apply_definition(series, edit, changed_fields + attribute_changes)

    events = []
    removed = 0
    try:
        if instruction is not None:
            removed = len(in_scope)
            events = await _remove_scheduled(db, in_scope)
        else:
            _propagate_attributes(in_scope, series, attribute_changes)
            if attribute_changes:
                events = [
                    event_for(OccurrenceEventType.UPDATED, occurrence) for occurrence in in_scope
                ]
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(f"Failed to update occurrences of series {series.id}: {exc}") from exc

    await _commit(db, f"update series {series.id}")
    sync.publish(events)

    logger.info(
        "Edited series %s (scope=%s changed=%s removed=%d)",
        series.id,
        scope.value,
        changed_fields + attribute_changes,
        removed,
    )

    generation = None
    if instruction is not None and series.active:
        if scope == EditScope.ENTIRE_SERIES and in_scope:
            # Scheduled occurrences left in the past are recreated under the new definition.
            earliest_removed = min(occurrence.start_at for occurrence in in_scope)
            if earliest_removed < instruction.regenerate_from:
                day, _ = utc_to_local(earliest_removed, series.timezone)
                instruction = replace(
                    instruction,
                    regenerate_from=max(
                        instruction.new_anchor,
                        start_of_local_day(day, series.timezone),
                    ),
                )
        generation = await generate_occurrences(
            db,
            series.id,
            months_ahead=months_ahead,
            instruction=instruction,
            clock=clock,
            sync=sync,
        )

    return SeriesEditResult(
        series_id=series.id,
        scope=scope,
        changed_fields=changed_fields + attribute_changes,
        regenerated=generation is not None,
        removed=removed,
        generation=generation,
    )


# ---------------------------------------------------------------------------
# Cancel (delete dialog)
# ---------------------------------------------------------------------------
async def cancel_occurrences(
    db: AsyncSession,
    series_id: str,
    scope: EditScope,
    occurrence_id: str | None = None,
    *,
    clock: Clock | None = None,
    sync: CalendarSyncNotifier | None = None,
) -> SeriesCancelResult:
    """
    Cancel one occurrence, the rest of a series, or the whole series.

    - this_only: the occurrence becomes cancelled and a "cancelled" exception
      is recorded.
    - this_and_future: scheduled occurrences from the chosen one onwards are
      cancelled and the series ends the day before it.
    - entire_series: the series is deactivated (see deactivate_series).
    """
    scope = EditScope(scope)
    clock = clock or SystemClock()
    sync = sync or get_calendar_sync()

    if scope == EditScope.ENTIRE_SERIES:
        result = await deactivate_series(db, series_id, clock=clock, sync=sync)
        return SeriesCancelResult(series_id=series_id, scope=scope, cancelled=result.cancelled)

    if not occurrence_id:
        raise InvalidEditScope(f"Scope {scope.value} requires an occurrence.")

    series = await load_series(db, series_id)
    occurrence = await load_occurrence(db, occurrence_id, series_id)
    if AppointmentStatus(occurrence.status).is_terminal:
        raise OccurrenceLocked(
            f"Appointment {occurrence.id} is {occurrence.status} and can no longer be cancelled."
        )

    if scope == EditScope.THIS_ONLY:
        targets = [occurrence]
        db.add(
            SeriesException(
                tenant_id=series.tenant_id,
                series_id=series.id,
                original_start_at=occurrence.start_at,
                change_type="cancelled",
            )
        )
    else:
        try:
            targets = await _scheduled_occurrences(db, series.id, from_instant=occurrence.start_at)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load occurrences of series {series.id}: {exc}") from exc
        split_day, _ = utc_to_local(occurrence.start_at, series.timezone)
        series.until_date = split_day - timedelta(days=1)

    for target in targets:
        target.status = AppointmentStatus.CANCELLED.value

    await _commit(db, f"cancel occurrences of series {series.id}")
    sync.publish([event_for(OccurrenceEventType.CANCELLED, target) for target in targets])

    logger.info(
        "Cancelled %d occurrence(s) of series %s (scope=%s)", len(targets), series.id, scope.value
    )
    return SeriesCancelResult(series_id=series.id, scope=scope, cancelled=len(targets))
