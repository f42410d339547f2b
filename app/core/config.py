# app/core/config.py
from functools import lru_cache

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global application configuration.

    Values are loaded from environment variables at runtime.

    These settings drive:
    - DB connection
    - Occurrence generation limits (horizon, caps, hard ceiling)
    - DST resolution policy defaults
    - Internal API key
    - Calendar-sync webhook
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    APP_NAME: str = "Practice Scheduler"
    APP_ENV: str = Field("local", description="Environment name: local/dev/stage/prod")
    LOG_LEVEL: str = Field("INFO", description="Root log level for the service.")

    DB_URL: str = Field(
        "sqlite+aiosqlite:///./practice_scheduler.db",
        description="SQLAlchemy-compatible database URL",
    )

    INTERNAL_API_KEY: str | None = Field(
        default=None,
        description="API key required for hitting /internal endpoints",
    )

    # --- Occurrence generation ---
    DEFAULT_MONTHS_AHEAD: int = Field(
        default=3,
        ge=1,
        description="Horizon (calendar months) used when a caller does not pass monthsAhead.",
    )
    DEFAULT_MAX_OCCURRENCES: int = Field(
        default=200,
        ge=1,
        description="Per-invocation cap on occurrences written by one generation run.",
    )
    HARD_CEILING_DAYS: int = Field(
        default=365,
        ge=1,
        description="Generation never reaches further than this many days from now.",
    )
    GENERATION_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Overall timeout applied by the HTTP layer around one generation run.",
    )

    # --- Rule preview (UI) ---
    PREVIEW_HORIZON_MONTHS: int = Field(
        default=6,
        description="How far ahead the rule preview evaluates.",
    )
    PREVIEW_COUNT: int = Field(
        default=3,
        description="Maximum number of instants returned by the rule preview.",
    )

    # --- DST policy ---
    DST_NONEXISTENT_POLICY: str = Field(
        default="shift_forward",
        description="Wall-clock times inside a spring-forward gap: shift_forward or reject.",
    )
    DST_AMBIGUOUS_POLICY: str = Field(
        default="earliest",
        description="Wall-clock times repeated on fall-back: earliest, latest or reject.",
    )

    # --- Calendar sync collaborator ---
    CALENDAR_SYNC_WEBHOOK_URL: AnyHttpUrl | None = Field(
        default=None,
        description=(
            "Endpoint of the calendar-sync adapter. Occurrence created/updated/"
            "cancelled events are posted here; unset disables notifications."
        ),
    )
    CALENDAR_SYNC_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="HTTP timeout for a single calendar-sync notification.",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Cached accessor for application settings.

    Using LRU cache ensures settings are read and validated only once,
    while still being easily importable across the app.
    """
    return Settings()
