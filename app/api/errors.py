# app/api/errors.py
from http import HTTPStatus

from fastapi import HTTPException

from app.core.exceptions import (
    InvalidEditScope,
    InvalidRecurrenceRule,
    InvalidStatusTransition,
    InvalidTimeInput,
    OccurrenceEngineError,
    OccurrenceLocked,
    OccurrenceNotFound,
    SeriesNotFound,
    StorageError,
)

_STATUS_BY_ERROR: tuple[tuple[type[OccurrenceEngineError], HTTPStatus], ...] = (
    (SeriesNotFound, HTTPStatus.NOT_FOUND),
    (OccurrenceNotFound, HTTPStatus.NOT_FOUND),
    (InvalidRecurrenceRule, HTTPStatus.UNPROCESSABLE_ENTITY),
    (InvalidTimeInput, HTTPStatus.UNPROCESSABLE_ENTITY),
    (InvalidEditScope, HTTPStatus.UNPROCESSABLE_ENTITY),
    (OccurrenceLocked, HTTPStatus.CONFLICT),
    (InvalidStatusTransition, HTTPStatus.CONFLICT),
    (StorageError, HTTPStatus.INTERNAL_SERVER_ERROR),
)


def to_http_exception(exc: OccurrenceEngineError) -> HTTPException:
    """
    Translate a domain error into the HTTPException the routes raise.
    """
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=HTTPStatus.INTERNAL_SERVER_ERROR, detail=str(exc))
