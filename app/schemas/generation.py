# app/schemas/generation.py
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field


class GenerationRequest(BaseModel):
    """
    Body of POST /internal/generate-occurrences.

    Accepts the camelCase names used by schedulers and the UI
    (`seriesId`, `monthsAhead`, ...) as well as snake_case.
    """

    model_config = ConfigDict(populate_by_name=True)

    series_id: str = Field(..., alias="seriesId", examples=["4f7c1d7e-2a7b-4c1e-9d55-0c3f4c8a1b20"])
    months_ahead: int | None = Field(
        default=None,
        alias="monthsAhead",
        ge=1,
        le=12,
        description="Horizon in calendar months; defaults to DEFAULT_MONTHS_AHEAD.",
    )
    from_date: date | None = Field(
        default=None,
        alias="fromDate",
        description="Start of the window (local day in the series zone); defaults to now.",
        examples=["2025-01-01"],
    )
    max_occurrences: int | None = Field(
        default=None,
        alias="maxOccurrences",
        ge=1,
        description="Per-invocation cap; defaults to DEFAULT_MAX_OCCURRENCES.",
    )


class GenerationResult(BaseModel):
    """
    Outcome of one generation run.

    `skipped` counts instants that already existed (duplicate key) or whose
    write failed transiently; neither is an error, a retry converges.
    """

    model_config = ConfigDict(populate_by_name=True)

    created: int = Field(0, ge=0, examples=[12])
    skipped: int = Field(0, ge=0, examples=[0])
    last_generated_until: datetime | None = Field(
        None,
        alias="lastGeneratedUntil",
        description="Watermark after the run (UTC), or null if nothing was ever generated.",
        examples=["2025-01-31T15:00:00Z"],
    )


class SeriesGenerationOutcome(BaseModel):
    series_id: str
    result: GenerationResult | None = None
    error: str | None = None


class BatchGenerationSummary(BaseModel):
    """
    Summary returned by the periodic "generate for every active series" job.
    """

    total_series_evaluated: int = Field(..., examples=[5])
    total_created: int = Field(..., examples=[40])
    total_skipped: int = Field(..., examples=[3])
    failed: int = Field(..., examples=[0])
    entries: list[SeriesGenerationOutcome]


class DeactivationResult(BaseModel):
    series_id: str
    cancelled: int = Field(..., description="Future scheduled occurrences moved to cancelled.")
