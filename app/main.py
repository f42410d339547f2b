# app/main.py
from fastapi import FastAPI

from app.api.routes import appointments, health, internal, rrule, series
from app.core.config import get_settings
from app.core.logging_config import configure_logging
from app.db.session import init_db_for_startup
from app.services.calendar_sync import WebhookCalendarSync, get_calendar_sync


def create_app() -> FastAPI:
    """
    Application factory for the Practice Scheduler service.
    """
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Recurring appointment engine: turns recurrence definitions into a\n"
            "bounded, idempotent set of UTC appointment instants and keeps them\n"
            "consistent as series are edited, split or deactivated."
        ),
        version="0.1.0",
    )

    # Routers
    app.include_router(health.router)
    app.include_router(series.router)
    app.include_router(appointments.router)
    app.include_router(rrule.router)
    app.include_router(internal.router)

    @app.on_event("startup")
    async def on_startup() -> None:  # pragma: no cover
        await init_db_for_startup()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:  # pragma: no cover
        notifier = get_calendar_sync()
        if isinstance(notifier, WebhookCalendarSync):
            await notifier.drain()

    return app


app = create_app()
