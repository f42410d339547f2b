# app/services/calendar_sync.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Protocol

import httpx

from app.core.config import get_settings

logger = logging.getLogger(__name__)


class OccurrenceEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    DELETED = "deleted"


@dataclass(frozen=True)
class OccurrenceEvent:
    """
    Fact emitted to the calendar-sync adapter: enough identity and timing for
    it to create, move or remove the mirrored external event.
    """

    event_type: OccurrenceEventType
    appointment_id: str
    tenant_id: str
    series_id: str | None
    start_at: datetime
    end_at: datetime

    def to_payload(self) -> dict:
        return {
            "event": self.event_type.value,
            "appointment_id": self.appointment_id,
            "tenant_id": self.tenant_id,
            "series_id": self.series_id,
            "start_at": self.start_at.isoformat(),
            "end_at": self.end_at.isoformat(),
        }


class CalendarSyncNotifier(Protocol):
    """
    Consumer of occurrence events.

    `publish` must return promptly and must never raise: delivery problems are
    the adapter's to log, and they never roll back the core write.
    """

    def publish(self, events: Iterable[OccurrenceEvent]) -> None:
        ...


class NullCalendarSync:
    """Used when no sync endpoint is configured."""

    def publish(self, events: Iterable[OccurrenceEvent]) -> None:
        return None


class RecordingCalendarSync:
    """
    Keeps published events in memory. Handy for tests and local debugging.
    """

    def __init__(self) -> None:
        self.events: list[OccurrenceEvent] = []

    def publish(self, events: Iterable[OccurrenceEvent]) -> None:
        self.events.extend(events)


class WebhookCalendarSync:
    """
    Posts occurrence events as JSON to the calendar-sync adapter.

    Delivery runs as a background task on the current event loop, so callers
    never wait on the adapter. Failures are logged and dropped; the adapter
    reconciles from the read model on its own schedule.
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        if not url:
            raise ValueError("url is required")
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._pending: set[asyncio.Task] = set()

    def publish(self, events: Iterable[OccurrenceEvent]) -> None:
        batch = list(events)
        if not batch:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop; dropping %d calendar-sync event(s).", len(batch)
            )
            return

        task = loop.create_task(self._deliver(batch))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, batch: list[OccurrenceEvent]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                for event in batch:
                    resp = await client.post(self._url, json=event.to_payload())
                    if resp.status_code // 100 != 2:
                        logger.warning(
                            "Calendar sync rejected %s for appointment %s (status=%s): %s",
                            event.event_type.value,
                            event.appointment_id,
                            resp.status_code,
                            resp.text,
                        )
        except httpx.HTTPError as exc:
            logger.warning("Calendar sync delivery failed: %s", exc)
        except Exception:
            logger.exception("Unexpected error while delivering calendar-sync events")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


# Simple singleton-style accessor wired to app settings
_calendar_sync_instance: Optional[CalendarSyncNotifier] = None


def get_calendar_sync() -> CalendarSyncNotifier:
    """
    Lazily construct the process-wide notifier from settings.

    Also usable as a FastAPI dependency; tests override it with a
    RecordingCalendarSync.
    """
    global _calendar_sync_instance
    if _calendar_sync_instance is None:
        settings = get_settings()
        if settings.CALENDAR_SYNC_WEBHOOK_URL:
            _calendar_sync_instance = WebhookCalendarSync(
                url=str(settings.CALENDAR_SYNC_WEBHOOK_URL),
                timeout_seconds=settings.CALENDAR_SYNC_TIMEOUT_SECONDS,
            )
        else:
            _calendar_sync_instance = NullCalendarSync()
    return _calendar_sync_instance


def event_for(event_type: OccurrenceEventType, appointment) -> OccurrenceEvent:
    return OccurrenceEvent(
        event_type=event_type,
        appointment_id=appointment.id,
        tenant_id=appointment.tenant_id,
        series_id=appointment.series_id,
        start_at=appointment.start_at,
        end_at=appointment.end_at,
    )
