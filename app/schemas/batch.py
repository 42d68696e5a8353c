from datetime import date, datetime

from pydantic import BaseModel, Field, model_validator


class BackfillRequest(BaseModel):
    """Optional body of the source-metrics trigger selecting an explicit date range."""

    model_config = {"populate_by_name": True}

    start_date: date = Field(alias="startDate")
    end_date: date = Field(alias="endDate")

    @model_validator(mode="after")
    def _check_order(self) -> "BackfillRequest":
        if self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self


class BatchStatsResponse(BaseModel):
    mode: str  # reconcile | backfill
    started_at: datetime
    total_processed: int
    successful: int
    failed: int
    skipped: int
    duration_ms: int
    success_rate: float
    processing_rate: float  # items per minute
    start_date: date | None = None
    end_date: date | None = None


class BatchStatusResponse(BaseModel):
    healthy: bool
    last_processed_at: datetime | None = None
    backlog: int
    checked_at: datetime


class ChartPrecomputeResponse(BaseModel):
    pairs: int
    computed: int
    failed: int
