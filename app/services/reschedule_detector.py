# app/services/reschedule_detector.py
"""
Decide whether a series edit needs regeneration, and from where.

Nothing in this module touches the database. `build_instruction` validates
the edited definition and returns a `RegenerationInstruction` that the
series editor hands to the occurrence generator; the generator never looks
at edit history itself.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.core.exceptions import (
    InvalidEditScope,
    OccurrenceLocked,
    OccurrenceNotFound,
)
from app.models.appointment import Appointment
from app.models.appointment_series import AppointmentSeries
from app.schemas.appointment import AppointmentStatus
from app.schemas.series import EditScope, SeriesEdit
from app.services.occurrence_generator import series_anchor
from app.services.rrule_builder import parse_rule
from app.services.time_conversion import (
    AmbiguousTimePolicy,
    NonexistentTimePolicy,
    local_to_utc,
    start_of_local_day,
    utc_to_local,
)

SCHEDULING_FIELDS = (
    "start_date",
    "local_start_time",
    "duration_minutes",
    "timezone",
    "rrule",
    "until_date",
)

ATTRIBUTE_FIELDS = ("client_id", "staff_id", "service_id", "title")

OVERRIDE_FIELDS = ("description", "cost")

# Fields that may legitimately be cleared by sending null.
_NULLABLE_SCHEDULING_FIELDS = {"until_date"}

# Changing only these cannot be expressed on a single detached occurrence.
_RULE_FIELDS = {"rrule", "until_date"}


@dataclass(frozen=True)
class RegenerationInstruction:
    """
    Explicit hand-off from edit detection to generation.

    Attributes
    ----------
    scope:
        Edit scope the instruction was built for.
    changed_fields:
        Scheduling fields whose value differs from the stored series.
    new_anchor:
        UTC instant of the edited anchor. For this_only edits this is the new
        start of the single detached occurrence.
    regenerate_from:
        UTC instant the generator starts from, ignoring the watermark.
    occurrence_id, split_at:
        The occurrence the edit was made on and its original start, if any.
    """

    scope: EditScope
    changed_fields: tuple[str, ...]
    new_anchor: datetime
    regenerate_from: datetime
    occurrence_id: str | None = None
    split_at: datetime | None = None


def _normalise(field: str, value: Any) -> Any:
    if field == "rrule" and isinstance(value, str):
        return value.strip().upper()
    if field == "timezone" and isinstance(value, str):
        return value.strip()
    return value


def _sent_changes(series: AppointmentSeries, edit: SeriesEdit, fields: tuple[str, ...]) -> list[str]:
    changed = []
    for field in fields:
        if field not in edit.model_fields_set:
            continue
        incoming = getattr(edit, field)
        if incoming is None and field not in _NULLABLE_SCHEDULING_FIELDS and field in SCHEDULING_FIELDS:
            continue
        if _normalise(field, incoming) != _normalise(field, getattr(series, field)):
            changed.append(field)
    return changed


def detect_changes(series: AppointmentSeries, edit: SeriesEdit) -> list[str]:
    """
    Scheduling fields that were sent and differ from the stored series.
    """
    return _sent_changes(series, edit, SCHEDULING_FIELDS)


def detect_attribute_changes(series: AppointmentSeries, edit: SeriesEdit) -> list[str]:
    return _sent_changes(series, edit, ATTRIBUTE_FIELDS)


def merged_definition(series: AppointmentSeries, edit: SeriesEdit, changed: list[str]) -> dict:
    """Stored scheduling values with the changed fields replaced by the edit's."""
    values = {field: getattr(series, field) for field in SCHEDULING_FIELDS}
    for field in changed:
        values[field] = getattr(edit, field)
    return values


def _check_target(
    series: AppointmentSeries,
    scope: EditScope,
    occurrence: Appointment | None,
) -> None:
    if scope in (EditScope.THIS_ONLY, EditScope.THIS_AND_FUTURE) and occurrence is None:
        raise InvalidEditScope(f"Scope {scope.value} requires an occurrence.")
    if occurrence is None:
        return
    if occurrence.series_id != series.id:
        raise OccurrenceNotFound(occurrence.id)
    if scope != EditScope.ENTIRE_SERIES and AppointmentStatus(occurrence.status).is_terminal:
        raise OccurrenceLocked(
            f"Appointment {occurrence.id} is {occurrence.status} and can no longer be edited."
        )


def build_instruction(
    series: AppointmentSeries,
    edit: SeriesEdit,
    scope: EditScope,
    occurrence: Appointment | None = None,
    *,
    now: datetime,
    nonexistent: NonexistentTimePolicy = NonexistentTimePolicy.SHIFT_FORWARD,
    ambiguous: AmbiguousTimePolicy = AmbiguousTimePolicy.EARLIEST,
) -> RegenerationInstruction | None:
    """
    Validate an edit and describe the regeneration it requires.

    Returns None when no scheduling field changed. Raises before anything is
    written:

    - InvalidEditScope: missing occurrence for a per-occurrence scope, or a
      rule-only change requested for a single occurrence.
    - OccurrenceNotFound: the occurrence belongs to another series.
    - OccurrenceLocked: the occurrence is already in a terminal status.
    - InvalidRecurrenceRule / InvalidTimeInput: the edited definition does
      not parse or its anchor cannot be placed in the zone.
    """
    scope = EditScope(scope)
    _check_target(series, scope, occurrence)

    changed = detect_changes(series, edit)
    if not changed:
        return None

    values = merged_definition(series, edit, changed)

    if scope == EditScope.THIS_ONLY:
        if _RULE_FIELDS & set(changed):
            raise InvalidEditScope(
                "Recurrence rule and end date changes apply to this_and_future or entire_series."
            )
        local_date, local_time = utc_to_local(occurrence.start_at, occurrence.timezone)
        new_start = local_to_utc(
            edit.start_date if "start_date" in changed else local_date,
            edit.local_start_time if "local_start_time" in changed else local_time,
            values["timezone"],
            nonexistent=nonexistent,
            ambiguous=ambiguous,
        )
        return RegenerationInstruction(
            scope=scope,
            changed_fields=tuple(changed),
            new_anchor=new_start,
            regenerate_from=new_start,
            occurrence_id=occurrence.id,
            split_at=occurrence.start_at,
        )

    anchor = series_anchor(
        values["start_date"],
        values["local_start_time"],
        values["timezone"],
        nonexistent=nonexistent,
        ambiguous=ambiguous,
    )
    parse_rule(values["rrule"], anchor)
    new_anchor = local_to_utc(
        values["start_date"],
        values["local_start_time"],
        values["timezone"],
        nonexistent=nonexistent,
        ambiguous=ambiguous,
    )

    if scope == EditScope.THIS_AND_FUTURE:
        split_at = occurrence.start_at
        # Start of the split day, so an earlier new start time on that day is included.
        split_day, _ = utc_to_local(split_at, values["timezone"])
        regenerate_from = min(split_at, start_of_local_day(split_day, values["timezone"]))
        return RegenerationInstruction(
            scope=scope,
            changed_fields=tuple(changed),
            new_anchor=new_anchor,
            regenerate_from=regenerate_from,
            occurrence_id=occurrence.id,
            split_at=split_at,
        )

    # Entire series: from today onwards. The editor moves this earlier when it
    # removes scheduled occurrences that lie in the past.
    today, _ = utc_to_local(now, values["timezone"])
    return RegenerationInstruction(
        scope=scope,
        changed_fields=tuple(changed),
        new_anchor=new_anchor,
        regenerate_from=max(new_anchor, start_of_local_day(today, values["timezone"])),
        occurrence_id=occurrence.id if occurrence is not None else None,
        split_at=None,
    )
