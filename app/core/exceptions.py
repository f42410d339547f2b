# app/core/exceptions.py
from __future__ import annotations


class OccurrenceEngineError(Exception):
    """
    Base class for every error raised by the occurrence engine.

    The HTTP layer maps subclasses to status codes; batch callers can catch
    this single type.
    """


class SeriesNotFound(OccurrenceEngineError, LookupError):
    """Raised when a series id does not resolve to a stored series."""

    def __init__(self, series_id: str):
        super().__init__(f"Appointment series {series_id} not found.")
        self.series_id = series_id


class OccurrenceNotFound(OccurrenceEngineError, LookupError):
    """Raised when an appointment id is unknown or not part of the expected series."""

    def __init__(self, appointment_id: str):
        super().__init__(f"Appointment {appointment_id} not found.")
        self.appointment_id = appointment_id


class InvalidRecurrenceRule(OccurrenceEngineError, ValueError):
    """Raised when recurrence-rule text cannot be parsed or is unsupported."""


class InvalidTimeInput(OccurrenceEngineError, ValueError):
    """
    Raised for malformed date/time strings, unknown IANA zone names, naive
    instants, or wall-clock values rejected by the DST policy.
    """


class OccurrenceLocked(OccurrenceEngineError):
    """Raised when an edit targets an occurrence that is already in a terminal status."""


class InvalidStatusTransition(OccurrenceEngineError):
    """Raised when a status change would leave a terminal state."""


class StorageError(OccurrenceEngineError):
    """Raised when reading or writing series state fails at the storage layer."""


class InvalidEditScope(OccurrenceEngineError, ValueError):
    """Raised when an edit scope cannot be applied (e.g. this_only without an occurrence)."""
