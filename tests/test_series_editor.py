# tests/test_series_editor.py
from datetime import date, datetime, time, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.clock import FixedClock
from app.core.exceptions import (
    InvalidEditScope,
    InvalidRecurrenceRule,
    OccurrenceLocked,
    OccurrenceNotFound,
)
from app.db.session import AsyncSessionLocal
from app.models.appointment import Appointment
from app.models.appointment_series import AppointmentSeries
from app.models.series_exception import SeriesException
from app.schemas.appointment import AppointmentStatus
from app.schemas.series import EditScope, SeriesEdit
from app.services.calendar_sync import OccurrenceEventType, RecordingCalendarSync
from app.services import occurrence_generator
from app.services.occurrence_generator import generate_occurrences, load_series
from app.services.reschedule_detector import build_instruction, detect_changes
from app.services.series_editor import apply_series_edit, cancel_occurrences, create_series
from app.services.time_conversion import utc_to_local

UTC = timezone.utc
NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
FIRST_MONDAY = "FREQ=MONTHLY;INTERVAL=1;BYDAY=MO;BYSETPOS=1"


async def _january_series(session, payload) -> AppointmentSeries:
    """Mon/Wed/Fri series with every January occurrence materialised."""
    series = AppointmentSeries(**payload.model_dump())
    session.add(series)
    await session.commit()
    await generate_occurrences(
        session,
        series.id,
        months_ahead=1,
        from_date=date(2025, 1, 1),
        clock=FixedClock(NOW),
        sync=RecordingCalendarSync(),
    )
    await session.refresh(series)
    return series


async def _by_day(session, series_id) -> dict[int, Appointment]:
    result = await session.execute(
        select(Appointment).where(Appointment.series_id == series_id).order_by(Appointment.start_at)
    )
    return {utc_to_local(a.start_at, a.timezone)[0].day: a for a in result.scalars().all()}


async def _series_appointments(session, series_id) -> list[Appointment]:
    result = await session.execute(
        select(Appointment)
        .where(Appointment.series_id == series_id)
        .order_by(Appointment.start_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Detection (pure)
# ---------------------------------------------------------------------------
def test_detect_changes_only_reports_sent_and_different_fields():
    series = AppointmentSeries(
        start_date=date(2025, 1, 6),
        local_start_time=time(9, 0),
        duration_minutes=50,
        timezone="America/Chicago",
        rrule="FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR",
        until_date=None,
    )

    assert detect_changes(series, SeriesEdit()) == []
    assert detect_changes(series, SeriesEdit(local_start_time=time(9, 0), title="x")) == []
    assert detect_changes(series, SeriesEdit(rrule="freq=weekly;interval=1;byday=mo,we,fr")) == []
    assert detect_changes(
        series, SeriesEdit(local_start_time=time(10, 0), until_date=date(2025, 6, 30))
    ) == ["local_start_time", "until_date"]


def test_build_instruction_validates_new_rule_before_anything_is_written():
    series = AppointmentSeries(
        id="series-1",
        start_date=date(2025, 1, 6),
        local_start_time=time(9, 0),
        duration_minutes=50,
        timezone="America/Chicago",
        rrule="FREQ=WEEKLY;BYDAY=MO",
        until_date=None,
    )

    with pytest.raises(InvalidRecurrenceRule):
        build_instruction(series, SeriesEdit(rrule="FREQ=SOMETIMES"), EditScope.ENTIRE_SERIES, now=NOW)

    instruction = build_instruction(
        series, SeriesEdit(local_start_time=time(10, 0)), EditScope.ENTIRE_SERIES, now=NOW
    )
    assert instruction.changed_fields == ("local_start_time",)
    assert instruction.new_anchor == datetime(2025, 1, 6, 16, 0, tzinfo=UTC)
    assert instruction.regenerate_from == instruction.new_anchor

    with pytest.raises(InvalidEditScope):
        build_instruction(series, SeriesEdit(local_start_time=time(10, 0)), EditScope.THIS_ONLY, now=NOW)


# ---------------------------------------------------------------------------
# this_and_future
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_this_and_future_switch_to_first_monday(series_payload):
    """
    Weekly Mon/Wed/Fri series switched to "first Monday of the month" from
    Wednesday 2025-01-15 on. Earlier occurrences stay, documented ones are
    never touched, later scheduled ones follow the new rule.
    """
    clock = FixedClock(datetime(2025, 1, 10, 12, 0, tzinfo=UTC))
    sync = RecordingCalendarSync()

    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())
        by_day = await _by_day(session, series.id)
        for day in (6, 8, 24):
            by_day[day].status = AppointmentStatus.DOCUMENTED.value
        await session.commit()
        before_split = {day: by_day[day].id for day in (10, 13)}

        result = await apply_series_edit(
            session,
            series.id,
            SeriesEdit(rrule=FIRST_MONDAY),
            EditScope.THIS_AND_FUTURE,
            occurrence_id=by_day[15].id,
            clock=clock,
            sync=sync,
        )

        remaining = await _series_appointments(session, series.id)
        stored = await session.get(AppointmentSeries, series.id)

    assert result.changed_fields == ["rrule"]
    assert result.removed == 7  # 15, 17, 20, 22, 27, 29, 31
    assert result.regenerated is True
    assert result.generation.created == 3

    assert [(a.start_at, a.status) for a in remaining] == [
        (datetime(2025, 1, 6, 15, 0, tzinfo=UTC), "documented"),
        (datetime(2025, 1, 8, 15, 0, tzinfo=UTC), "documented"),
        (datetime(2025, 1, 10, 15, 0, tzinfo=UTC), "scheduled"),
        (datetime(2025, 1, 13, 15, 0, tzinfo=UTC), "scheduled"),
        (datetime(2025, 1, 24, 15, 0, tzinfo=UTC), "documented"),
        (datetime(2025, 2, 3, 15, 0, tzinfo=UTC), "scheduled"),
        (datetime(2025, 3, 3, 15, 0, tzinfo=UTC), "scheduled"),
        (datetime(2025, 4, 7, 14, 0, tzinfo=UTC), "scheduled"),
    ]
    assert {a.id for a in remaining} >= set(before_split.values())
    assert stored.rrule == FIRST_MONDAY

    kinds = [e.event_type for e in sync.events]
    assert kinds.count(OccurrenceEventType.DELETED) == 7
    assert kinds.count(OccurrenceEventType.CREATED) == 3


@pytest.mark.asyncio
async def test_editing_a_documented_occurrence_is_refused(series_payload):
    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())
        by_day = await _by_day(session, series.id)
        by_day[8].status = AppointmentStatus.DOCUMENTED.value
        await session.commit()

        for scope in (EditScope.THIS_ONLY, EditScope.THIS_AND_FUTURE):
            with pytest.raises(OccurrenceLocked):
                await apply_series_edit(
                    session,
                    series.id,
                    SeriesEdit(local_start_time=time(10, 0)),
                    scope,
                    occurrence_id=by_day[8].id,
                    clock=FixedClock(NOW),
                    sync=RecordingCalendarSync(),
                )


# ---------------------------------------------------------------------------
# this_only
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_this_only_detaches_the_occurrence(series_payload):
    sync = RecordingCalendarSync()

    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())
        target = (await _by_day(session, series.id))[8]

        result = await apply_series_edit(
            session,
            series.id,
            SeriesEdit(local_start_time=time(11, 0), description="Moved at client request"),
            EditScope.THIS_ONLY,
            occurrence_id=target.id,
            clock=FixedClock(NOW),
            sync=sync,
        )

        moved = await session.get(Appointment, target.id)
        stored = await session.get(AppointmentSeries, series.id)
        exceptions = (
            await session.execute(select(SeriesException).where(SeriesException.series_id == series.id))
        ).scalars().all()

        # A later regeneration over the same window must not bring 09:00 back.
        await session.execute(
            AppointmentSeries.__table__.update()
            .where(AppointmentSeries.id == series.id)
            .values(last_generated_until=None)
        )
        await session.commit()
        regenerated = await generate_occurrences(
            session, series.id, months_ahead=1, from_date=date(2025, 1, 1),
            clock=FixedClock(NOW), sync=RecordingCalendarSync(),
        )

    assert result.detached_appointment_id == target.id
    assert moved.series_id is None
    assert moved.start_at == datetime(2025, 1, 8, 17, 0, tzinfo=UTC)
    assert moved.end_at == datetime(2025, 1, 8, 17, 50, tzinfo=UTC)
    assert moved.description == "Moved at client request"
    assert stored.local_start_time == time(9, 0)

    assert len(exceptions) == 1
    assert exceptions[0].original_start_at == datetime(2025, 1, 8, 15, 0, tzinfo=UTC)
    assert exceptions[0].change_type == "rescheduled"
    assert exceptions[0].replacement_appointment_id == target.id

    assert regenerated.created == 0
    assert regenerated.skipped == 11
    assert [e.event_type for e in sync.events] == [OccurrenceEventType.UPDATED]


@pytest.mark.asyncio
async def test_this_only_rejects_rule_changes(series_payload):
    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())
        target = (await _by_day(session, series.id))[8]

        with pytest.raises(InvalidEditScope):
            await apply_series_edit(
                session,
                series.id,
                SeriesEdit(rrule=FIRST_MONDAY),
                EditScope.THIS_ONLY,
                occurrence_id=target.id,
                clock=FixedClock(NOW),
                sync=RecordingCalendarSync(),
            )


@pytest.mark.asyncio
async def test_occurrence_from_another_series_is_not_found(series_payload):
    async with AsyncSessionLocal() as session:
        first = await _january_series(session, series_payload())
        second = await _january_series(session, series_payload(client_id="client-43"))
        foreign = (await _by_day(session, second.id))[8]

        with pytest.raises(OccurrenceNotFound):
            await apply_series_edit(
                session,
                first.id,
                SeriesEdit(local_start_time=time(10, 0)),
                EditScope.THIS_ONLY,
                occurrence_id=foreign.id,
                clock=FixedClock(NOW),
                sync=RecordingCalendarSync(),
            )


# ---------------------------------------------------------------------------
# entire_series
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_entire_series_time_change_regenerates_scheduled_only(series_payload):
    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())
        old_watermark = series.last_generated_until
        documented = (await _by_day(session, series.id))[6]
        documented.status = AppointmentStatus.DOCUMENTED.value
        await session.commit()

        result = await apply_series_edit(
            session,
            series.id,
            SeriesEdit(local_start_time=time(10, 0)),
            EditScope.ENTIRE_SERIES,
            clock=FixedClock(NOW),
            sync=RecordingCalendarSync(),
        )
        remaining = await _series_appointments(session, series.id)

    assert result.removed == 11
    assert result.generation.created > 0
    assert result.generation.last_generated_until >= old_watermark

    untouched = [a for a in remaining if a.status == "documented"]
    assert [(a.id, a.start_at) for a in untouched] == [
        (documented.id, datetime(2025, 1, 6, 15, 0, tzinfo=UTC))
    ]

    scheduled = [a for a in remaining if a.status == "scheduled"]
    assert len(scheduled) == result.generation.created
    assert all(utc_to_local(a.start_at, "America/Chicago")[1] == time(10, 0) for a in scheduled)
    # The documented Monday is not double-booked at the new time.
    assert all(utc_to_local(a.start_at, "America/Chicago")[0] != date(2025, 1, 6) for a in scheduled)


@pytest.mark.asyncio
async def test_entire_series_edit_keeps_a_detached_day_single_booked(series_payload):
    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())
        target = (await _by_day(session, series.id))[10]

        await apply_series_edit(
            session,
            series.id,
            SeriesEdit(local_start_time=time(13, 0)),
            EditScope.THIS_ONLY,
            occurrence_id=target.id,
            clock=FixedClock(NOW),
            sync=RecordingCalendarSync(),
        )
        await apply_series_edit(
            session,
            series.id,
            SeriesEdit(local_start_time=time(10, 0)),
            EditScope.ENTIRE_SERIES,
            clock=FixedClock(NOW),
            sync=RecordingCalendarSync(),
        )
        same_day = (
            await session.execute(
                select(Appointment)
                .where(
                    Appointment.tenant_id == "tenant-1",
                    Appointment.start_at >= datetime(2025, 1, 10, 6, 0, tzinfo=UTC),
                    Appointment.start_at < datetime(2025, 1, 11, 6, 0, tzinfo=UTC),
                )
                .execution_options(populate_existing=True)
            )
        ).scalars().all()

    assert [(a.id, a.start_at, a.series_id) for a in same_day] == [
        (target.id, datetime(2025, 1, 10, 19, 0, tzinfo=UTC), None)
    ]


@pytest.mark.asyncio
async def test_regeneration_write_failure_is_refilled_by_the_next_run(series_payload, monkeypatch):
    failing_instant = datetime(2025, 1, 10, 16, 0, tzinfo=UTC)
    original_insert = occurrence_generator._insert_occurrence

    async def flaky_insert(db, series, planned, now):
        if planned.start_at == failing_instant:
            raise OperationalError("INSERT INTO appointments", {}, Exception("database is locked"))
        return await original_insert(db, series, planned, now)

    clock = FixedClock(NOW)

    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())

        monkeypatch.setattr(occurrence_generator, "_insert_occurrence", flaky_insert)
        edit = await apply_series_edit(
            session,
            series.id,
            SeriesEdit(local_start_time=time(10, 0)),
            EditScope.ENTIRE_SERIES,
            clock=clock,
            sync=RecordingCalendarSync(),
        )
        monkeypatch.setattr(occurrence_generator, "_insert_occurrence", original_insert)
        after_edit = await load_series(session, series.id)
        pending_after_edit = after_edit.pending_regeneration_from
        missing_after_edit = failing_instant not in [
            a.start_at for a in await _series_appointments(session, series.id)
        ]

        first_retry = await generate_occurrences(
            session, series.id, months_ahead=1, from_date=date(2025, 1, 1), clock=clock,
            sync=RecordingCalendarSync(),
        )
        second_retry = await generate_occurrences(
            session, series.id, months_ahead=1, from_date=date(2025, 1, 1), clock=clock,
            sync=RecordingCalendarSync(),
        )
        remaining = await _series_appointments(session, series.id)
        stored = await load_series(session, series.id)

    assert edit.regenerated is True
    assert missing_after_edit
    assert pending_after_edit == failing_instant

    assert first_retry.created == 1
    assert second_retry.created == 0
    assert stored.pending_regeneration_from is None

    january = [a.start_at for a in remaining if a.start_at.month == 1]
    assert failing_instant in january
    assert len(january) == len(set(january)) == 12
    assert all(utc_to_local(a.start_at, "America/Chicago")[1] == time(10, 0) for a in remaining)


@pytest.mark.asyncio
async def test_attribute_only_edit_propagates_without_regeneration(series_payload):
    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())

        result = await apply_series_edit(
            session,
            series.id,
            SeriesEdit(staff_id="staff-8", title="Family session"),
            EditScope.ENTIRE_SERIES,
            clock=FixedClock(NOW),
            sync=RecordingCalendarSync(),
        )
        remaining = await _series_appointments(session, series.id)

    assert result.regenerated is False
    assert result.removed == 0
    assert len(remaining) == 12
    assert {(a.staff_id, a.title) for a in remaining} == {("staff-8", "Family session")}


# ---------------------------------------------------------------------------
# create + cancel
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_create_series_generates_initial_window(series_payload):
    async with AsyncSessionLocal() as session:
        series, generation = await create_series(
            session, series_payload(), months_ahead=1, clock=FixedClock(NOW), sync=RecordingCalendarSync()
        )

    # From "now" (2025-01-01) one month ahead: the twelve January sessions.
    assert generation.created == 12
    assert series.last_generated_until == datetime(2025, 1, 31, 15, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_create_series_rejects_bad_input_without_writing(series_payload):
    async with AsyncSessionLocal() as session:
        with pytest.raises(InvalidRecurrenceRule):
            await create_series(
                session, series_payload(rrule="FREQ=SOMETIMES"), clock=FixedClock(NOW),
                sync=RecordingCalendarSync(),
            )
        count = len((await session.execute(select(AppointmentSeries))).scalars().all())

    assert count == 0


@pytest.mark.asyncio
async def test_cancel_this_only_records_exception(series_payload):
    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())
        target = (await _by_day(session, series.id))[13]

        result = await cancel_occurrences(
            session, series.id, EditScope.THIS_ONLY, target.id,
            clock=FixedClock(NOW), sync=RecordingCalendarSync(),
        )
        cancelled = await session.get(Appointment, target.id)
        exception = (
            await session.execute(select(SeriesException).where(SeriesException.series_id == series.id))
        ).scalar_one()

    assert result.cancelled == 1
    assert cancelled.status == "cancelled"
    assert exception.change_type == "cancelled"
    assert exception.original_start_at == target.start_at


@pytest.mark.asyncio
async def test_cancel_this_and_future_ends_the_series(series_payload):
    async with AsyncSessionLocal() as session:
        series = await _january_series(session, series_payload())
        target = (await _by_day(session, series.id))[20]

        result = await cancel_occurrences(
            session, series.id, EditScope.THIS_AND_FUTURE, target.id,
            clock=FixedClock(NOW), sync=RecordingCalendarSync(),
        )
        remaining = await _series_appointments(session, series.id)
        stored = await session.get(AppointmentSeries, series.id)

    assert result.cancelled == 6  # 20, 22, 24, 27, 29, 31
    assert stored.until_date == date(2025, 1, 19)
    assert [a.status for a in remaining].count("scheduled") == 6
