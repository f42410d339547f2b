# app/services/time_conversion.py
"""
Conversions between a clinician's local wall-clock intent and UTC storage.

Every function takes the IANA zone explicitly; nothing here reads an ambient
or process-wide timezone. Zones are resolved with the standard-library
`zoneinfo` database.

DST handling
------------
A local wall-clock value can be:

- NORMAL       exists exactly once in the zone.
- NONEXISTENT  falls in a spring-forward gap (e.g. 02:30 on the day clocks
               jump from 02:00 to 03:00).
- AMBIGUOUS    occurs twice on a fall-back day.

The caller chooses the resolution through `NonexistentTimePolicy` and
`AmbiguousTimePolicy`; defaults come from settings.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.exceptions import InvalidTimeInput

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


class NonexistentTimePolicy(str, Enum):
    """
    Resolution for wall-clock values inside a spring-forward gap.

    SHIFT_FORWARD pushes the wall time forward by the length of the gap
    (02:30 becomes 03:30 when clocks jump one hour). REJECT raises
    InvalidTimeInput.
    """

    SHIFT_FORWARD = "shift_forward"
    REJECT = "reject"


class AmbiguousTimePolicy(str, Enum):
    """
    Resolution for wall-clock values repeated on a fall-back day.

    EARLIEST picks the first occurrence (still on daylight time), LATEST the
    second one. REJECT raises InvalidTimeInput.
    """

    EARLIEST = "earliest"
    LATEST = "latest"
    REJECT = "reject"


class WallClockKind(str, Enum):
    NORMAL = "normal"
    NONEXISTENT = "nonexistent"
    AMBIGUOUS = "ambiguous"


def resolve_zone(name: str) -> ZoneInfo:
    """
    Resolve an IANA zone name, raising InvalidTimeInput for anything unknown.
    """
    if not isinstance(name, str) or not name.strip():
        raise InvalidTimeInput(f"Timezone name must be a non-empty string, got {name!r}.")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise InvalidTimeInput(f"Unknown timezone {name!r}.") from exc


def parse_date(value: date | str) -> date:
    """
    Accept a `date` or a strict `YYYY-MM-DD` string.
    """
    if isinstance(value, datetime):
        raise InvalidTimeInput(f"Expected a calendar date, got datetime {value!r}.")
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise InvalidTimeInput(f"Malformed date {value!r}; expected YYYY-MM-DD.")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InvalidTimeInput(f"Invalid date {value!r}: {exc}") from exc


def parse_time(value: time | str) -> time:
    """
    Accept a naive `time` or an `HH:MM` / `HH:MM:SS` string.
    """
    if isinstance(value, time):
        if value.tzinfo is not None:
            raise InvalidTimeInput("Wall-clock time must not carry a tzinfo.")
        return value
    match = _TIME_RE.match(value) if isinstance(value, str) else None
    if match is None:
        raise InvalidTimeInput(f"Malformed time {value!r}; expected HH:MM or HH:MM:SS.")
    hour, minute, second = match.groups()
    try:
        return time(int(hour), int(minute), int(second or 0))
    except ValueError as exc:
        raise InvalidTimeInput(f"Invalid time {value!r}: {exc}") from exc


def _classify(naive: datetime, zone: ZoneInfo) -> WallClockKind:
    earlier = naive.replace(tzinfo=zone, fold=0)
    later = naive.replace(tzinfo=zone, fold=1)
    if earlier.utcoffset() == later.utcoffset():
        return WallClockKind.NORMAL

    round_trip = earlier.astimezone(timezone.utc).astimezone(zone).replace(tzinfo=None)
    if round_trip == naive:
        return WallClockKind.AMBIGUOUS
    return WallClockKind.NONEXISTENT


def describe_wall_clock(
    local_date: date | str,
    local_time: time | str,
    tz_name: str,
) -> WallClockKind:
    """
    Tell whether a wall-clock value exists once, never, or twice in the zone.
    """
    zone = resolve_zone(tz_name)
    naive = datetime.combine(parse_date(local_date), parse_time(local_time))
    return _classify(naive, zone)


def wall_clock_to_utc(
    naive: datetime,
    zone: ZoneInfo,
    *,
    nonexistent: NonexistentTimePolicy = NonexistentTimePolicy.SHIFT_FORWARD,
    ambiguous: AmbiguousTimePolicy = AmbiguousTimePolicy.EARLIEST,
) -> datetime:
    """
    Resolve a naive local datetime in an already-resolved zone to aware UTC.
    """
    nonexistent = NonexistentTimePolicy(nonexistent)
    ambiguous = AmbiguousTimePolicy(ambiguous)
    kind = _classify(naive, zone)

    if kind is WallClockKind.AMBIGUOUS:
        if ambiguous is AmbiguousTimePolicy.REJECT:
            raise InvalidTimeInput(
                f"{naive.isoformat()} occurs twice in {zone.key} (DST fall-back)."
            )
        fold = 1 if ambiguous is AmbiguousTimePolicy.LATEST else 0
        return naive.replace(tzinfo=zone, fold=fold).astimezone(timezone.utc)

    if kind is WallClockKind.NONEXISTENT:
        if nonexistent is NonexistentTimePolicy.REJECT:
            raise InvalidTimeInput(
                f"{naive.isoformat()} does not exist in {zone.key} (DST spring-forward gap)."
            )
        # fold=0 applies the pre-transition offset, which lands after the gap.
        return naive.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)

    return naive.replace(tzinfo=zone).astimezone(timezone.utc)


def local_to_utc(
    local_date: date | str,
    local_time: time | str,
    tz_name: str,
    *,
    nonexistent: NonexistentTimePolicy = NonexistentTimePolicy.SHIFT_FORWARD,
    ambiguous: AmbiguousTimePolicy = AmbiguousTimePolicy.EARLIEST,
) -> datetime:
    """
    Compose a local date + wall-clock time in `tz_name` into one UTC instant.

    Raises
    ------
    InvalidTimeInput
        Malformed date/time, unknown zone, or a DST-affected value rejected by
        the chosen policy.
    """
    zone = resolve_zone(tz_name)
    naive = datetime.combine(parse_date(local_date), parse_time(local_time))
    return wall_clock_to_utc(naive, zone, nonexistent=nonexistent, ambiguous=ambiguous)


def utc_to_local(instant: datetime, tz_name: str) -> tuple[date, time]:
    """
    Inverse of local_to_utc: the (date, wall-clock time) an instant shows in `tz_name`.
    """
    if not isinstance(instant, datetime):
        raise InvalidTimeInput(f"Expected a datetime instant, got {instant!r}.")
    if instant.tzinfo is None or instant.utcoffset() is None:
        raise InvalidTimeInput("Instant must be timezone-aware; naive values are not guessed.")

    local = instant.astimezone(resolve_zone(tz_name))
    return local.date(), local.time()


def start_of_local_day(local_date: date | str, tz_name: str) -> datetime:
    return local_to_utc(local_date, time(0, 0), tz_name)


def end_of_local_day(local_date: date | str, tz_name: str) -> datetime:
    """
    Last whole second of `local_date` in the zone, as a UTC instant.
    """
    return local_to_utc(local_date, time(23, 59, 59), tz_name)
