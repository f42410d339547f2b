# app/services/rrule_builder.py
from __future__ import annotations

import logging
import re
from datetime import date, datetime, time

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rrule as RRule, rrulestr

from app.core.config import get_settings
from app.core.exceptions import InvalidRecurrenceRule, InvalidTimeInput
from app.schemas.rrule import (
    SET_POSITIONS,
    WEEKDAY_CODES,
    Frequency,
    MonthlyType,
    RecurrenceConfig,
)
from app.services.time_conversion import parse_date, parse_time, resolve_zone, wall_clock_to_utc

logger = logging.getLogger(__name__)

_SUPPORTED_KEYS = {"FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "BYSETPOS", "UNTIL", "WKST"}
_BYDAY_TOKEN = re.compile(r"^([+-]?\d)?(MO|TU|WE|TH|FR|SA|SU)$")
_UNTIL_VALUE = re.compile(r"^(\d{8})(?:T(\d{6})(Z)?)?$")
_UNTIL_PART = re.compile(r"UNTIL=([0-9TZ]+)", re.IGNORECASE)

_WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_WEEKDAY_LONG_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_POSITION_NAMES = {1: "first", 2: "second", 3: "third", 4: "fourth", -1: "last"}


def default_config() -> RecurrenceConfig:
    """
    Safe configuration handed to the UI when rule text cannot be understood.
    """
    return RecurrenceConfig(frequency=Frequency.WEEKLY, interval=1)


# ---------------------------------------------------------------------------
# config -> text
# ---------------------------------------------------------------------------
def to_rule_text(config: RecurrenceConfig) -> str:
    """
    Serialise a RecurrenceConfig into an RRULE body.

    Examples
    --------
    WEEKLY on Mon/Wed/Fri      -> FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR
    first Monday of the month  -> FREQ=MONTHLY;INTERVAL=1;BYDAY=MO;BYSETPOS=1
    15th of every other month  -> FREQ=MONTHLY;INTERVAL=2;BYMONTHDAY=15

    `until` is emitted as a floating UNTIL (no trailing Z): the last second of
    that day on the series' own wall clock.
    """
    parts = [f"FREQ={config.frequency.value}", f"INTERVAL={config.interval}"]

    if config.frequency == Frequency.WEEKLY and config.weekdays:
        parts.append("BYDAY=" + ",".join(WEEKDAY_CODES[day] for day in config.weekdays))

    if config.frequency == Frequency.MONTHLY:
        if config.monthly_type == MonthlyType.WEEKDAY:
            parts.append(f"BYDAY={WEEKDAY_CODES[config.month_weekday]}")
            parts.append(f"BYSETPOS={config.set_position}")
        elif config.monthly_type == MonthlyType.DAY:
            parts.append(f"BYMONTHDAY={config.month_day}")

    if config.until is not None:
        parts.append(f"UNTIL={config.until.strftime('%Y%m%d')}T235959")

    return ";".join(parts)


# ---------------------------------------------------------------------------
# text -> config
# ---------------------------------------------------------------------------
def _strip_prefix(text: str) -> str:
    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:"):]
    return body.strip().rstrip(";")


def _split_rule(text: str) -> dict[str, str]:
    if not isinstance(text, str) or not text.strip():
        raise InvalidRecurrenceRule("Recurrence rule text is empty.")
    if "\n" in text.strip():
        raise InvalidRecurrenceRule("Expected a single RRULE line.")

    parts: dict[str, str] = {}
    for chunk in _strip_prefix(text).split(";"):
        if "=" not in chunk:
            raise InvalidRecurrenceRule(f"Malformed rule component {chunk!r}.")
        key, value = chunk.split("=", 1)
        key = key.strip().upper()
        if key in parts:
            raise InvalidRecurrenceRule(f"Duplicate rule component {key}.")
        parts[key] = value.strip().upper()
    return parts


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidRecurrenceRule(f"{name} must be an integer, got {value!r}.") from exc


def _parse_until(value: str) -> date:
    match = _UNTIL_VALUE.match(value)
    if match is None:
        raise InvalidRecurrenceRule(f"Malformed UNTIL value {value!r}.")
    try:
        return datetime.strptime(match.group(1), "%Y%m%d").date()
    except ValueError as exc:
        raise InvalidRecurrenceRule(f"Invalid UNTIL date {value!r}.") from exc


def _parse_byday(value: str) -> list[tuple[int | None, int]]:
    tokens = []
    for raw in value.split(","):
        match = _BYDAY_TOKEN.match(raw.strip())
        if match is None:
            raise InvalidRecurrenceRule(f"Malformed BYDAY token {raw!r}.")
        ordinal = int(match.group(1)) if match.group(1) else None
        tokens.append((ordinal, WEEKDAY_CODES.index(match.group(2))))
    return tokens


def _config_from_parts(parts: dict[str, str]) -> RecurrenceConfig:
    unsupported = set(parts) - _SUPPORTED_KEYS
    if unsupported:
        raise InvalidRecurrenceRule(f"Unsupported rule components: {sorted(unsupported)}.")

    freq = parts.get("FREQ")
    if freq not in (Frequency.WEEKLY.value, Frequency.MONTHLY.value):
        raise InvalidRecurrenceRule(f"Unsupported frequency {freq!r}.")

    values: dict[str, object] = {
        "frequency": Frequency(freq),
        "interval": _parse_int(parts.get("INTERVAL", "1"), "INTERVAL"),
    }
    if "UNTIL" in parts:
        values["until"] = _parse_until(parts["UNTIL"])

    byday = _parse_byday(parts["BYDAY"]) if "BYDAY" in parts else []

    if freq == Frequency.WEEKLY.value:
        if "BYMONTHDAY" in parts or "BYSETPOS" in parts:
            raise InvalidRecurrenceRule("WEEKLY rules with BYMONTHDAY/BYSETPOS are not supported.")
        if any(ordinal is not None for ordinal, _ in byday):
            raise InvalidRecurrenceRule("WEEKLY rules cannot use ordinal weekdays.")
        if byday:
            values["weekdays"] = [day for _, day in byday]
        return RecurrenceConfig(**values)

    # MONTHLY
    if "BYMONTHDAY" in parts:
        if byday or "BYSETPOS" in parts:
            raise InvalidRecurrenceRule("Mixed monthly day and weekday patterns are not supported.")
        values["monthly_type"] = MonthlyType.DAY
        values["month_day"] = _parse_int(parts["BYMONTHDAY"], "BYMONTHDAY")
        return RecurrenceConfig(**values)

    if byday:
        if len(byday) != 1:
            raise InvalidRecurrenceRule("Monthly weekday pattern must name exactly one weekday.")
        ordinal, weekday = byday[0]
        if "BYSETPOS" in parts:
            if ordinal is not None:
                raise InvalidRecurrenceRule("Use either BYSETPOS or an ordinal weekday, not both.")
            ordinal = _parse_int(parts["BYSETPOS"], "BYSETPOS")
        if ordinal not in SET_POSITIONS:
            raise InvalidRecurrenceRule(f"Unsupported weekday position {ordinal!r}.")
        values["monthly_type"] = MonthlyType.WEEKDAY
        values["set_position"] = ordinal
        values["month_weekday"] = weekday
        return RecurrenceConfig(**values)

    if "BYSETPOS" in parts:
        raise InvalidRecurrenceRule("BYSETPOS requires a BYDAY weekday.")
    return RecurrenceConfig(**values)


def from_rule_text(text: str | None) -> RecurrenceConfig:
    """
    Parse rule text into a RecurrenceConfig for the editing UI.

    Never raises: empty, unparseable or unsupported text (DAILY rules, COUNT,
    multi-weekday monthly patterns, ...) yields `default_config()`. The
    generator uses the strict `parse_rule` instead.
    """
    if not text or not text.strip():
        return default_config()
    try:
        return _config_from_parts(_split_rule(text))
    except ValueError as exc:
        logger.warning("Falling back to default recurrence config for %r: %s", text, exc)
        return default_config()


# ---------------------------------------------------------------------------
# Config editing helpers
# ---------------------------------------------------------------------------
def change_frequency(config: RecurrenceConfig, frequency: Frequency) -> RecurrenceConfig:
    """
    Switch frequency, dropping fields that mean nothing for the new one.

    Switching to MONTHLY installs the "day 1 of the month" pattern.
    """
    frequency = Frequency(frequency)
    if frequency == config.frequency:
        return config

    if frequency == Frequency.WEEKLY:
        return RecurrenceConfig(
            frequency=Frequency.WEEKLY,
            interval=config.interval,
            until=config.until,
        )

    return RecurrenceConfig(
        frequency=Frequency.MONTHLY,
        interval=config.interval,
        monthly_type=MonthlyType.DAY,
        month_day=1,
        until=config.until,
    )


def change_monthly_type(config: RecurrenceConfig, monthly_type: MonthlyType) -> RecurrenceConfig:
    monthly_type = MonthlyType(monthly_type)
    if config.frequency != Frequency.MONTHLY:
        raise ValueError("monthly_type only applies to MONTHLY rules")

    if monthly_type == MonthlyType.WEEKDAY:
        return RecurrenceConfig(
            frequency=Frequency.MONTHLY,
            interval=config.interval,
            monthly_type=MonthlyType.WEEKDAY,
            set_position=config.set_position or 1,
            month_weekday=config.month_weekday if config.month_weekday is not None else 0,
            until=config.until,
        )

    return RecurrenceConfig(
        frequency=Frequency.MONTHLY,
        interval=config.interval,
        monthly_type=MonthlyType.DAY,
        month_day=config.month_day or 1,
        until=config.until,
    )


def describe(config: RecurrenceConfig) -> str:
    """
    Short English summary, e.g. "Every 2 weeks on Mon, Thu until 2025-06-30".
    """
    unit = "week" if config.frequency == Frequency.WEEKLY else "month"
    text = f"Every {unit}" if config.interval == 1 else f"Every {config.interval} {unit}s"

    if config.frequency == Frequency.WEEKLY and config.weekdays:
        text += " on " + ", ".join(_WEEKDAY_NAMES[day] for day in config.weekdays)
    elif config.monthly_type == MonthlyType.DAY:
        text += f" on day {config.month_day}"
    elif config.monthly_type == MonthlyType.WEEKDAY:
        text += (
            f" on the {_POSITION_NAMES[config.set_position]} "
            f"{_WEEKDAY_LONG_NAMES[config.month_weekday]}"
        )

    if config.until is not None:
        text += f" until {config.until.isoformat()}"
    return text


# ---------------------------------------------------------------------------
# Strict parsing + bounded preview
# ---------------------------------------------------------------------------
def _normalise_until(body: str, anchor: datetime) -> str:
    """
    Rewrite a floating UNTIL (no trailing Z) as UTC.

    dateutil requires UTC UNTIL values once DTSTART is zone-aware. A floating
    value is read as wall-clock time in the anchor's zone; a bare date means
    the end of that day.
    """
    match = _UNTIL_PART.search(body)
    if match is None:
        return body

    value = match.group(1).upper()
    parsed = _UNTIL_VALUE.match(value)
    if parsed is None:
        raise InvalidRecurrenceRule(f"Malformed UNTIL value {value!r}.")
    if parsed.group(3):
        return body

    try:
        day = datetime.strptime(parsed.group(1), "%Y%m%d")
        clock = (
            datetime.strptime(parsed.group(2), "%H%M%S").time()
            if parsed.group(2)
            else time(23, 59, 59)
        )
    except ValueError as exc:
        raise InvalidRecurrenceRule(f"Invalid UNTIL value {value!r}.") from exc

    until_utc = wall_clock_to_utc(datetime.combine(day.date(), clock), anchor.tzinfo)
    replacement = "UNTIL=" + until_utc.strftime("%Y%m%dT%H%M%SZ")
    return body[: match.start()] + replacement + body[match.end():]


def parse_rule(text: str, anchor: datetime) -> RRule:
    """
    Strictly parse rule text against a zone-aware local anchor.

    Evaluating against the local anchor (rather than its UTC instant) keeps
    every generated occurrence on the anchor's wall-clock time across DST
    changes.

    Raises
    ------
    InvalidRecurrenceRule
        For empty, malformed or otherwise unparseable text.
    """
    if anchor.tzinfo is None:
        raise InvalidTimeInput("Recurrence anchor must be timezone-aware.")
    if not isinstance(text, str) or not text.strip():
        raise InvalidRecurrenceRule("Recurrence rule text is empty.")
    if "\n" in text.strip():
        raise InvalidRecurrenceRule("Expected a single RRULE line.")

    body = _normalise_until(_strip_prefix(text), anchor)
    try:
        rule = rrulestr(body, dtstart=anchor)
    except (ValueError, TypeError, KeyError, IndexError, OverflowError) as exc:
        raise InvalidRecurrenceRule(f"Invalid recurrence rule {text!r}: {exc}") from exc

    if not isinstance(rule, RRule):
        raise InvalidRecurrenceRule(f"Expected a single recurrence rule, got {text!r}.")
    return rule


def preview_occurrences(
    rule_text: str,
    start_date: date | str,
    local_start_time: time | str = time(0, 0),
    tz_name: str = "UTC",
    *,
    horizon_months: int | None = None,
    limit: int | None = None,
) -> list[datetime]:
    """
    Return the next few local instants of a rule for UI display.

    Evaluation stops at `horizon_months` after the start and after `limit`
    hits, whichever comes first, so rules without UNTIL/COUNT (or absurdly
    dense ones) cannot stall the caller. Invalid input yields an empty list.
    """
    settings = get_settings()
    horizon_months = horizon_months or settings.PREVIEW_HORIZON_MONTHS
    limit = limit or settings.PREVIEW_COUNT

    try:
        zone = resolve_zone(tz_name)
        anchor = datetime.combine(parse_date(start_date), parse_time(local_start_time)).replace(
            tzinfo=zone
        )
        rule = parse_rule(rule_text, anchor)
    except (InvalidRecurrenceRule, InvalidTimeInput) as exc:
        logger.warning("Cannot preview recurrence %r: %s", rule_text, exc)
        return []

    horizon_end = anchor + relativedelta(months=horizon_months)
    upcoming: list[datetime] = []
    for candidate in rule:
        if candidate > horizon_end:
            break
        upcoming.append(candidate)
        if len(upcoming) >= limit:
            break
    return upcoming


def preview_message(occurrences: list[datetime]) -> str:
    if not occurrences:
        return "No upcoming occurrences"
    return "Next occurrences: " + ", ".join(
        f"{_WEEKDAY_NAMES[dt.weekday()]} {dt.strftime('%b')} {dt.day}" for dt in occurrences
    )

