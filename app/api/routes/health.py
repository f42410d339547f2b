# app/api/routes/health.py
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.core.clock import Clock, get_clock
from app.core.config import get_settings


router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """
    Response schema for the health check endpoint.
    """

    status: str = Field(..., description="Overall health status.", examples=["ok"])
    app_name: str = Field(..., description="Name of the running application.", examples=["Practice Scheduler"])
    environment: str = Field(..., description="Deployment environment (local/dev/stage/prod).", examples=["local"])
    timestamp_utc: datetime = Field(
        ...,
        description="Server-side timestamp (UTC) at which this health check was generated.",
        examples=["2025-01-01T10:30:00Z"],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description=(
        "Lightweight liveness endpoint for container probes and uptime checks. "
        "It does not touch the database or the calendar-sync adapter."
    ),
)
async def health_check(clock: Clock = Depends(get_clock)) -> HealthResponse:
    settings = get_settings()
    return HealthResponse(
        status="ok",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        timestamp_utc=clock.now(),
    )
