# app/services/occurrence_generator.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Iterable

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, SystemClock
from app.core.config import get_settings
from app.core.exceptions import OccurrenceEngineError, SeriesNotFound, StorageError
from app.models.appointment import Appointment
from app.models.appointment_series import AppointmentSeries
from app.models.series_exception import SeriesException
from app.schemas.appointment import AppointmentStatus
from app.schemas.generation import (
    BatchGenerationSummary,
    GenerationResult,
    SeriesGenerationOutcome,
)
from app.services.calendar_sync import (
    CalendarSyncNotifier,
    OccurrenceEvent,
    OccurrenceEventType,
    get_calendar_sync,
)
from app.services.rrule_builder import parse_rule
from app.services.time_conversion import (
    AmbiguousTimePolicy,
    NonexistentTimePolicy,
    parse_date,
    parse_time,
    resolve_zone,
    end_of_local_day,
    start_of_local_day,
    utc_to_local,
    wall_clock_to_utc,
)

if TYPE_CHECKING:
    from app.services.reschedule_detector import RegenerationInstruction

logger = logging.getLogger(__name__)

ONE_SECOND = timedelta(seconds=1)


@dataclass(frozen=True)
class SeriesSnapshot:
    """
    Plain copy of the series columns the generator needs.

    Taken once before writing: a rollback after a failed insert expires every
    ORM instance in the session, and the loop must keep going without
    reloading the series.
    """

    id: str
    tenant_id: str
    client_id: str
    staff_id: str
    service_id: str | None
    title: str | None
    start_date: date
    local_start_time: time
    timezone: str
    duration_minutes: int
    rrule: str
    until_date: date | None
    max_occurrences: int | None
    active: bool
    last_generated_until: datetime | None
    pending_regeneration_from: datetime | None

    @classmethod
    def from_model(cls, series: AppointmentSeries) -> "SeriesSnapshot":
        return cls(
            id=series.id,
            tenant_id=series.tenant_id,
            client_id=series.client_id,
            staff_id=series.staff_id,
            service_id=series.service_id,
            title=series.title,
            start_date=series.start_date,
            local_start_time=series.local_start_time,
            timezone=series.timezone,
            duration_minutes=series.duration_minutes,
            rrule=series.rrule,
            until_date=series.until_date,
            max_occurrences=series.max_occurrences,
            active=bool(series.active),
            last_generated_until=series.last_generated_until,
            pending_regeneration_from=series.pending_regeneration_from,
        )


@dataclass(frozen=True)
class PlannedOccurrence:
    start_at: datetime
    end_at: datetime


def series_anchor(
    start_date: date | str,
    local_start_time: time | str,
    tz_name: str,
    *,
    nonexistent: NonexistentTimePolicy = NonexistentTimePolicy.SHIFT_FORWARD,
    ambiguous: AmbiguousTimePolicy = AmbiguousTimePolicy.EARLIEST,
) -> datetime:
    """
    Zone-aware local anchor the rule is evaluated against.

    The anchor stays in local wall-clock form so that enumeration keeps the
    local start time across DST changes. Its UTC form is validated against
    the DST policy here, so a rejected anchor fails before any write.
    """
    zone = resolve_zone(tz_name)
    naive = datetime.combine(parse_date(start_date), parse_time(local_start_time))
    wall_clock_to_utc(naive, zone, nonexistent=nonexistent, ambiguous=ambiguous)
    return naive.replace(tzinfo=zone)


def default_policies() -> tuple[NonexistentTimePolicy, AmbiguousTimePolicy]:
    settings = get_settings()
    return (
        NonexistentTimePolicy(settings.DST_NONEXISTENT_POLICY),
        AmbiguousTimePolicy(settings.DST_AMBIGUOUS_POLICY),
    )


def compute_window(
    series: SeriesSnapshot,
    *,
    now: datetime,
    months_ahead: int,
    from_date: date | None = None,
    instruction: "RegenerationInstruction | None" = None,
) -> tuple[datetime, datetime]:
    """
    Return the inclusive UTC window `[start, end]` to materialise.

    Normal runs start at `from_date` (start of that local day, default now)
    or just after the watermark, whichever is later. The horizon is measured
    from the requested start, not from the watermark, so repeating a call with
    the same arguments covers the same window. A regeneration instruction
    starts at its `regenerate_from` instead; its horizon is measured from the
    later of that point and now and reaches at least the old watermark.
    A series with `pending_regeneration_from` set is resumed from there on
    the next normal run, again up to at least the old watermark.

    The end is clamped by the end of `until_date` in the series zone and by
    the hard ceiling `now + HARD_CEILING_DAYS`.
    """
    settings = get_settings()
    resuming = instruction is None and series.pending_regeneration_from is not None

    if instruction is not None:
        window_start = instruction.regenerate_from
        horizon_base = max(window_start, now)
    else:
        requested_start = start_of_local_day(from_date, series.timezone) if from_date else now
        window_start = requested_start
        if series.last_generated_until is not None:
            window_start = max(window_start, series.last_generated_until + ONE_SECOND)
        if resuming:
            window_start = min(window_start, series.pending_regeneration_from)
        horizon_base = requested_start

    window_end = horizon_base + relativedelta(months=months_ahead)
    if (instruction is not None or resuming) and series.last_generated_until is not None:
        # Replace everything that had already been materialised.
        window_end = max(window_end, series.last_generated_until)
    window_end = min(window_end, now + timedelta(days=settings.HARD_CEILING_DAYS))
    if series.until_date is not None:
        window_end = min(window_end, end_of_local_day(series.until_date, series.timezone))

    return window_start, window_end


def plan_occurrences(
    series: SeriesSnapshot,
    window_start: datetime,
    window_end: datetime,
    *,
    limit: int,
    excluded: Iterable[datetime] = (),
    locked_days: Iterable[date] = (),
    nonexistent: NonexistentTimePolicy = NonexistentTimePolicy.SHIFT_FORWARD,
    ambiguous: AmbiguousTimePolicy = AmbiguousTimePolicy.EARLIEST,
) -> list[PlannedOccurrence]:
    """
    Enumerate the series' instants inside the window.

    Instants listed in `excluded` and local days listed in `locked_days` are
    left out. Pure and synchronous. Iteration is lazy and stops at the first instant
    past `window_end`, at the series' lifetime cap (`max_occurrences`-th rule
    instant) or once `limit` instants are collected, so dense or endless rules
    always terminate.

    Raises
    ------
    InvalidRecurrenceRule, InvalidTimeInput
        Before anything is enumerated.
    """
    zone = resolve_zone(series.timezone)
    anchor = series_anchor(
        series.start_date,
        series.local_start_time,
        series.timezone,
        nonexistent=nonexistent,
        ambiguous=ambiguous,
    )
    rule = parse_rule(series.rrule, anchor)
    duration = timedelta(minutes=series.duration_minutes)
    skip = set(excluded)
    skip_days = set(locked_days)

    planned: list[PlannedOccurrence] = []
    if limit <= 0 or window_end < window_start:
        return planned

    for index, local in enumerate(rule):
        if series.max_occurrences is not None and index >= series.max_occurrences:
            break

        start_at = wall_clock_to_utc(
            local.replace(tzinfo=None),
            zone,
            nonexistent=nonexistent,
            ambiguous=ambiguous,
        )
        if start_at > window_end:
            break
        if start_at < window_start or start_at in skip or local.date() in skip_days:
            continue

        planned.append(PlannedOccurrence(start_at=start_at, end_at=start_at + duration))
        if len(planned) >= limit:
            break

    return planned


# ---------------------------------------------------------------------------
# Persistence helpers
# ---------------------------------------------------------------------------
def _dialect_insert(db: AsyncSession):
    dialect = db.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise StorageError(f"Unsupported database dialect {dialect!r} for occurrence upserts.")


async def load_series(db: AsyncSession, series_id: str) -> AppointmentSeries:
    try:
        result = await db.execute(
            select(AppointmentSeries)
            .where(AppointmentSeries.id == series_id)
            # The watermark is written with Core UPDATEs; always re-read it.
            .execution_options(populate_existing=True)
        )
        series = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to load series {series_id}: {exc}") from exc

    if series is None:
        raise SeriesNotFound(series_id)
    return series


async def _excluded_instants(db: AsyncSession, series_id: str) -> set[datetime]:
    try:
        result = await db.execute(
            select(SeriesException.original_start_at).where(
                SeriesException.series_id == series_id
            )
        )
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to load exceptions for series {series_id}: {exc}") from exc
    return set(result.scalars().all())


async def _locked_days(db: AsyncSession, series_id: str, tz_name: str) -> set[date]:
    """
    Local days a regenerated series must leave alone.

    That is every day holding an occurrence of the series in a terminal
    status, and every day whose instant was rescheduled away or cancelled
    (the detached appointment keeps that slot).
    """
    try:
        terminal = await db.execute(
            select(Appointment.start_at).where(
                Appointment.series_id == series_id,
                Appointment.status != AppointmentStatus.SCHEDULED.value,
            )
        )
        recorded = await db.execute(
            select(SeriesException.original_start_at).where(
                SeriesException.series_id == series_id
            )
        )
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to load occurrences of series {series_id}: {exc}") from exc

    instants = list(terminal.scalars().all()) + list(recorded.scalars().all())
    return {utc_to_local(start_at, tz_name)[0] for start_at in instants}


async def _insert_occurrence(
    db: AsyncSession,
    series: SeriesSnapshot,
    planned: PlannedOccurrence,
    now: datetime,
) -> str | None:
    """
    Insert one occurrence, returning its id, or None when it already exists.
    """
    insert = _dialect_insert(db)
    stmt = (
        insert(Appointment)
        .values(
            id=str(uuid.uuid4()),
            tenant_id=series.tenant_id,
            series_id=series.id,
            client_id=series.client_id,
            staff_id=series.staff_id,
            service_id=series.service_id,
            title=series.title,
            start_at=planned.start_at,
            end_at=planned.end_at,
            timezone=series.timezone,
            status=AppointmentStatus.SCHEDULED.value,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["series_id", "start_at"])
        .returning(Appointment.id)
    )
    result = await db.execute(stmt)
    new_id = result.scalar_one_or_none()
    await db.commit()
    return new_id


async def _advance_watermark(
    db: AsyncSession,
    series_id: str,
    candidate: datetime,
) -> datetime | None:
    """
    Move `last_generated_until` forward to `candidate` (never backwards) and
    return the stored value.
    """
    try:
        await db.execute(
            update(AppointmentSeries)
            .where(
                AppointmentSeries.id == series_id,
                or_(
                    AppointmentSeries.last_generated_until.is_(None),
                    AppointmentSeries.last_generated_until < candidate,
                ),
            )
            .values(last_generated_until=candidate)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        result = await db.execute(
            select(AppointmentSeries.last_generated_until).where(
                AppointmentSeries.id == series_id
            )
        )
        return result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(f"Failed to persist watermark for series {series_id}: {exc}") from exc


def _pending_after_run(
    pending: datetime | None,
    *,
    window_start: datetime,
    window_end: datetime,
    planned: list[PlannedOccurrence],
    limit: int,
    first_failure: datetime | None,
) -> datetime | None:
    """
    Where the next run has to resume a regeneration, or None when it is complete.

    A pending point is settled once a run covered it: the window contains it
    and the plan was not cut short by `limit` before reaching it. A failed
    write, or a plan cut short by `limit`, leaves a new resume point.
    """
    covered = (
        pending is not None
        and window_start <= pending <= window_end
        and (len(planned) < limit or planned[-1].start_at >= pending)
    )
    candidates = []
    if pending is not None and not covered:
        candidates.append(pending)
    if first_failure is not None:
        candidates.append(first_failure)
    if planned and len(planned) >= limit:
        candidates.append(planned[-1].start_at + ONE_SECOND)
    return min(candidates) if candidates else None


async def _store_pending(db: AsyncSession, series_id: str, value: datetime | None) -> None:
    try:
        await db.execute(
            update(AppointmentSeries)
            .where(AppointmentSeries.id == series_id)
            .values(pending_regeneration_from=value)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(
            f"Failed to record pending regeneration for series {series_id}: {exc}"
        ) from exc


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------
async def generate_occurrences(
    db: AsyncSession,
    series_id: str,
    *,
    months_ahead: int | None = None,
    from_date: date | None = None,
    max_occurrences: int | None = None,
    instruction: "RegenerationInstruction | None" = None,
    clock: Clock | None = None,
    sync: CalendarSyncNotifier | None = None,
    nonexistent: NonexistentTimePolicy | None = None,
    ambiguous: AmbiguousTimePolicy | None = None,
) -> GenerationResult:
    """
    Materialise the occurrences of one series inside a bounded window.

    Behavior
    --------
    - Missing series -> SeriesNotFound. Inactive series -> no-op result.
    - Rule and time inputs are validated before the first write.
    - Every instant is upserted on (series_id, start_at) and committed on
      its own; an existing row counts as skipped.
    - A failed insert is logged, rolled back and counted as skipped; the
      remaining instants are still processed.
    - The watermark advances to the last instant up to which every planned
      occurrence is known to be stored, so a retry refills any gap.
    - "created" events for new rows are handed to the calendar-sync notifier.

    Parameters
    ----------
    months_ahead:
        Horizon in calendar months (default DEFAULT_MONTHS_AHEAD).
    from_date:
        Local calendar day the window starts at (default now).
    max_occurrences:
        Per-call cap (default DEFAULT_MAX_OCCURRENCES).
    instruction:
        RegenerationInstruction from the reschedule detector; overrides the
        window start and bypasses the watermark.
    """
    settings = get_settings()
    clock = clock or SystemClock()
    sync = sync or get_calendar_sync()
    default_nonexistent, default_ambiguous = default_policies()
    nonexistent = NonexistentTimePolicy(nonexistent or default_nonexistent)
    ambiguous = AmbiguousTimePolicy(ambiguous or default_ambiguous)

    months_ahead = months_ahead or settings.DEFAULT_MONTHS_AHEAD
    limit = max_occurrences or settings.DEFAULT_MAX_OCCURRENCES

    series = SeriesSnapshot.from_model(await load_series(db, series_id))

    if not series.active:
        logger.info("Series %s is inactive; nothing to generate.", series_id)
        return GenerationResult(
            created=0, skipped=0, last_generated_until=series.last_generated_until
        )

    if series.max_occurrences is not None:
        limit = min(limit, series.max_occurrences)

    now = clock.now()
    window_start, window_end = compute_window(
        series,
        now=now,
        months_ahead=months_ahead,
        from_date=from_date,
        instruction=instruction,
    )
    excluded = await _excluded_instants(db, series_id)
    # A regenerated series never double-books a day it documented, cancelled or detached.
    regenerating = instruction is not None or series.pending_regeneration_from is not None
    locked_days = (
        await _locked_days(db, series_id, series.timezone) if regenerating else set()
    )
    planned = plan_occurrences(
        series,
        window_start,
        window_end,
        limit=limit,
        excluded=excluded,
        locked_days=locked_days,
        nonexistent=nonexistent,
        ambiguous=ambiguous,
    )

    logger.info(
        "Generating series %s: window %s .. %s, %d instant(s) planned",
        series_id,
        window_start.isoformat(),
        window_end.isoformat(),
        len(planned),
    )

    created = 0
    skipped = 0
    failed = 0
    first_failure: datetime | None = None
    stored_through: datetime | None = None
    events: list[OccurrenceEvent] = []

    for occurrence in planned:
        try:
            new_id = await _insert_occurrence(db, series, occurrence, now)
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.warning(
                "Failed to store occurrence %s of series %s: %s",
                occurrence.start_at.isoformat(),
                series_id,
                exc,
            )
            skipped += 1
            failed += 1
            if first_failure is None:
                first_failure = occurrence.start_at
            continue

        if new_id is None:
            skipped += 1
        else:
            created += 1
            events.append(
                OccurrenceEvent(
                    event_type=OccurrenceEventType.CREATED,
                    appointment_id=new_id,
                    tenant_id=series.tenant_id,
                    series_id=series.id,
                    start_at=occurrence.start_at,
                    end_at=occurrence.end_at,
                )
            )
        if first_failure is None:
            stored_through = occurrence.start_at

    watermark = series.last_generated_until
    if stored_through is not None:
        watermark = await _advance_watermark(db, series_id, stored_through)

    if regenerating:
        pending = _pending_after_run(
            series.pending_regeneration_from,
            window_start=window_start,
            window_end=window_end,
            planned=planned,
            limit=limit,
            first_failure=first_failure,
        )
        if pending != series.pending_regeneration_from:
            await _store_pending(db, series_id, pending)
            if pending is not None:
                logger.warning(
                    "Series %s regeneration incomplete; resuming from %s on the next run",
                    series_id,
                    pending.isoformat(),
                )

    sync.publish(events)

    logger.info(
        "Series %s generation done: created=%d skipped=%d failed=%d watermark=%s",
        series_id,
        created,
        skipped,
        failed,
        watermark.isoformat() if watermark else None,
    )
    return GenerationResult(created=created, skipped=skipped, last_generated_until=watermark)


async def generate_for_active_series(
    db: AsyncSession,
    *,
    months_ahead: int | None = None,
    clock: Clock | None = None,
    sync: CalendarSyncNotifier | None = None,
) -> BatchGenerationSummary:
    """
    Periodic job: extend every active series by one generation window.

    A series that fails (bad rule, storage error, ...) is logged and reported
    in the summary; the remaining series are still processed.
    """
    try:
        result = await db.execute(
            select(AppointmentSeries.id)
            .where(AppointmentSeries.active.is_(True))
            .order_by(AppointmentSeries.created_at)
        )
        series_ids = list(result.scalars().all())
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to list active series: {exc}") from exc

    entries: list[SeriesGenerationOutcome] = []
    for series_id in series_ids:
        try:
            outcome = await generate_occurrences(
                db,
                series_id,
                months_ahead=months_ahead,
                clock=clock,
                sync=sync,
            )
        except OccurrenceEngineError as exc:
            logger.error("Generation failed for series %s: %s", series_id, exc)
            entries.append(SeriesGenerationOutcome(series_id=series_id, error=str(exc)))
            continue
        entries.append(SeriesGenerationOutcome(series_id=series_id, result=outcome))

    return BatchGenerationSummary(
        total_series_evaluated=len(series_ids),
        total_created=sum(e.result.created for e in entries if e.result),
        total_skipped=sum(e.result.skipped for e in entries if e.result),
        failed=sum(1 for e in entries if e.error is not None),
        entries=entries,
    )
