"""Pydantic schemas for request/response payloads."""

from datetime import datetime, date
from uuid import UUID
from typing import Optional, List, Literal, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import LevelEnum, ProviderEnum, SyncJobStatusEnum, SyncJobTypeEnum


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"],
    )


class DateRange(BaseModel):
    """Date range for a sync run.

    WHAT: Start and end dates that were fetched
    WHY: Provides visibility into what period was synced
    """

    start: date = Field(description="Start date (inclusive)")
    end: date = Field(description="End date (inclusive)")


# Sync Schemas
class SyncRequest(BaseModel):
    """Request for a metrics sync.

    WHAT: Mode, levels and backfill depth for one sync run
    WHY: Lets the UI trigger daily, intraday or backfill runs on demand
    """

    mode: SyncJobTypeEnum = Field(
        default=SyncJobTypeEnum.daily,
        description="daily = yesterday, intraday = today, backfill = today minus days_back .. today",
    )
    levels: Optional[List[LevelEnum]] = Field(
        default=None,
        description="Levels to fetch (default: configured SYNC_LEVELS)",
    )
    days_back: Optional[int] = Field(
        default=None,
        ge=1,
        le=365,
        description="Backfill depth in days (default: SYNC_DEFAULT_DAYS_BACK)",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "mode": "backfill",
                "levels": ["campaign", "adset", "ad"],
                "days_back": 30,
            }
        }
    }


class SyncStats(BaseModel):
    """Statistics from one sync run.

    WHAT: Rows fetched, written, unchanged and validation warnings
    WHY: Provides visibility into sync operation results
    """

    fetched_rows: int = Field(default=0, description="Rows returned by the platform")
    upserted_rows: int = Field(default=0, description="Rows inserted or updated")
    unchanged_rows: int = Field(default=0, description="Rows skipped because metrics did not change")
    warnings_count: int = Field(default=0, description="Advisory data-quality warnings")
    rows_by_level: Dict[str, int] = Field(default_factory=dict, description="Fetched rows per level")
    date_range: DateRange = Field(description="Date range that was synced")
    duration_seconds: float = Field(description="Total duration in seconds")


class SyncResponse(BaseModel):
    """Response from a sync endpoint."""

    success: bool = Field(description="Whether sync succeeded overall")
    job_id: UUID = Field(description="Sync job id")
    job_type: SyncJobTypeEnum = Field(description="Sync mode that ran")
    synced: SyncStats = Field(description="Statistics about what was synced")
    errors: List[str] = Field(
        default_factory=list,
        description="List of error messages (if any)",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "job_id": "8a3c5f2e-1b4d-4c7a-9e2f-0d6b8a1c3e5f",
                "job_type": "daily",
                "synced": {
                    "fetched_rows": 120,
                    "upserted_rows": 118,
                    "unchanged_rows": 2,
                    "warnings_count": 1,
                    "rows_by_level": {"campaign": 10, "adset": 40, "ad": 70},
                    "date_range": {"start": "2024-10-30", "end": "2024-10-30"},
                    "duration_seconds": 12.4,
                },
                "errors": [],
            }
        }
    }


class SyncJobOut(BaseModel):
    """One sync job row for history listings."""

    id: UUID
    provider: ProviderEnum
    job_type: SyncJobTypeEnum
    status: SyncJobStatusEnum
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    levels: Optional[List[str]] = None
    fetched_rows: int = 0
    upserted_rows: int = 0
    unchanged_rows: int = 0
    warnings_count: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class SyncStateOut(BaseModel):
    last_daily_date_synced: Optional[date] = None
    last_intraday_synced_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    consecutive_failures: int = 0

    model_config = ConfigDict(from_attributes=True)


TokenStatusLiteral = Literal["valid", "expiring_soon", "expired", "unknown"]


class TokenStatusOut(BaseModel):
    """Token health for a connection."""

    status: TokenStatusLiteral = Field(description="valid, expiring_soon, expired or unknown")
    expires_at: Optional[datetime] = Field(default=None, description="Known or estimated expiry")
    expires_at_estimated: bool = Field(default=False, description="True when expiry was estimated")
    days_until_expiry: Optional[int] = Field(default=None, description="Whole days until expiry")
    needs_refresh: bool = Field(default=False, description="Expires within one hour or already expired")
    refresh_attempts: int = Field(default=0, description="Failed refresh attempts since last success")
    requires_reconnect: bool = Field(default=False, description="User must reconnect the account")


class TokenRefreshResponse(BaseModel):
    refreshed: bool
    status: TokenStatusOut
    message: str


class SyncStatusOut(BaseModel):
    """Current sync status of a connection."""

    connection_id: UUID
    provider: ProviderEnum
    connection_status: str
    state: Optional[SyncStateOut] = None
    latest_job: Optional[SyncJobOut] = None
    token: Optional[TokenStatusOut] = None


# Gap detection schemas use the camelCase names the dashboard consumes
class DataGapOut(BaseModel):
    date_from: str = Field(alias="dateFrom", description="First missing day (YYYY-MM-DD)")
    date_to: str = Field(alias="dateTo", description="Last missing day (YYYY-MM-DD)")
    days: int = Field(description="Number of days in the gap")

    model_config = ConfigDict(populate_by_name=True)


class GapDetectionOut(BaseModel):
    """Gap detection result plus summary helpers."""

    account_id: str = Field(alias="metaAdAccountId")
    analyzed_from: str = Field(alias="analyzedFrom")
    analyzed_to: str = Field(alias="analyzedTo")
    total_days_in_period: int = Field(alias="totalDaysInPeriod")
    days_with_data: int = Field(alias="daysWithData")
    days_missing: int = Field(alias="daysMissing")
    gaps: List[DataGapOut]
    coverage_percent: int = Field(alias="coveragePercent")
    summary: str = Field(description="Human-readable gap summary")
    backfill_days: int = Field(alias="backfillDays", description="Days of backfill needed to cover the oldest gap")

    model_config = ConfigDict(populate_by_name=True)


# Metrics read schemas
class MetricTotals(BaseModel):
    impressions: float = 0
    clicks: float = 0
    spend: float = 0
    reach: float = 0
    conversions: float = 0
    conversion_value: float = 0
    ctr: float = 0
    cpc: float = 0
    cpm: float = 0
    frequency: float = 0
    roas: float = 0
    cost_per_result: float = 0


class EntityMetricsOut(BaseModel):
    entity_id: str
    entity_name: str
    level: Optional[str] = None
    first_date: str
    last_date: str
    days_with_data: int
    metrics: MetricTotals
    formatted: Dict[str, str] = Field(default_factory=dict)


class DailyMetricsOut(BaseModel):
    date: str
    metrics: MetricTotals


class PeriodComparisonOut(BaseModel):
    current: MetricTotals
    previous: MetricTotals
    change_pct: Dict[str, Optional[float]]


class TokenExchangeRequest(BaseModel):
    """Short-lived token to swap for a long-lived one."""

    access_token: str = Field(min_length=1, description="Short-lived Meta user token")

    @field_validator("access_token")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class AdAccountOut(BaseModel):
    """Meta ad account reachable with a connection's token."""

    id: str = Field(description="Graph id with act_ prefix", examples=["act_123"])
    account_id: Optional[str] = None
    name: Optional[str] = None
    currency: Optional[str] = None
    timezone_name: Optional[str] = None
    account_status: Optional[int] = Field(default=None, description="1 = active")
