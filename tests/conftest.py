# tests/conftest.py
import asyncio
import os
import tempfile
from datetime import date, datetime, time, timezone
from pathlib import Path

# Settings are cached on first use; point them at a throwaway SQLite file
# before anything under app/ is imported.
_DB_FILE = Path(tempfile.gettempdir()) / f"practice_scheduler_test_{os.getpid()}.db"
os.environ["DB_URL"] = os.environ.get("TEST_DB_URL", f"sqlite+aiosqlite:///{_DB_FILE}")
os.environ.setdefault("APP_ENV", "test")
os.environ.pop("INTERNAL_API_KEY", None)
os.environ.pop("CALENDAR_SYNC_WEBHOOK_URL", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.clock import FixedClock, get_clock  # noqa: E402
from app.db.session import init_db  # noqa: E402
from app.main import create_app  # noqa: E402
from app.schemas.series import SeriesCreate  # noqa: E402
from app.services.calendar_sync import RecordingCalendarSync, get_calendar_sync  # noqa: E402

# "Now" for most tests: New Year's Day 2025, 06:00 in Chicago.
NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_db():
    """
    Every test gets a clean schema + empty tables.
    """
    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(init_db())
    finally:
        loop.close()
    yield


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def sync() -> RecordingCalendarSync:
    return RecordingCalendarSync()


@pytest.fixture
def series_payload():
    """
    Factory for SeriesCreate payloads: Mon/Wed/Fri 09:00 in Chicago, 50 minutes,
    starting Monday 2025-01-06. Keyword arguments override any field.
    """

    def _build(**overrides) -> SeriesCreate:
        values = dict(
            tenant_id="tenant-1",
            client_id="client-42",
            staff_id="staff-7",
            service_id="svc-90837",
            title="Weekly therapy",
            start_date=date(2025, 1, 6),
            local_start_time=time(9, 0),
            timezone="America/Chicago",
            duration_minutes=50,
            rrule="FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR",
        )
        values.update(overrides)
        return SeriesCreate(**values)

    return _build


@pytest.fixture
def client(clock, sync) -> TestClient:
    """
    TestClient over a fresh app with the clock pinned to NOW and calendar-sync
    events recorded instead of posted.
    """
    app = create_app()
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_calendar_sync] = lambda: sync
    with TestClient(app) as test_client:
        yield test_client
