# app/core/clock.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """
    Source of the current UTC instant.

    Services take a Clock argument instead of calling datetime.now() so that
    tests can pin "now" without patching globals.
    """

    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)


class FixedClock:
    """
    Clock frozen at a given instant. Naive values are read as UTC.
    """

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._instant

    def advance_to(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant.astimezone(timezone.utc)


def get_clock() -> Clock:
    """
    FastAPI dependency returning the process clock.

    Overridden in tests via app.dependency_overrides.
    """
    return SystemClock()
