"""Sync job / state bookkeeping shared by the Meta and Google sync services.

WHAT:
    - Sync window resolution per mode (daily, intraday, backfill)
    - Connection lookup scoped to a workspace
    - `sync_jobs` lifecycle (running -> completed / failed)
    - `sync_states` watermark and failure counters
    - `insights_raw` audit rows and idempotent `insights_daily` upserts

WHY:
    Both providers write to the same tables with the same semantics; keeping
    the bookkeeping here means a fix applies to both.

REFERENCES:
    - adpulse/services/meta_sync_service.py
    - adpulse/services/google_sync_service.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import HTTPException, status
from sqlalchemy import desc
from sqlalchemy.orm import Session

from adpulse.metrics.extractor import ExtractedMetrics
from adpulse.models import (
    Connection,
    ConnectionStatus,
    InsightDaily,
    InsightRaw,
    LevelEnum,
    ProviderEnum,
    SyncJob,
    SyncJobStatusEnum,
    SyncJobTypeEnum,
    SyncState,
)
from adpulse.services.sync_comparison import has_metrics_changed

logger = logging.getLogger(__name__)

UPSERT_CREATED = "created"
UPSERT_UPDATED = "updated"
UPSERT_UNCHANGED = "unchanged"

# insights_daily columns written from ExtractedMetrics
METRIC_COLUMNS = (
    "impressions",
    "clicks",
    "spend",
    "reach",
    "frequency",
    "ctr",
    "cpc",
    "cpm",
    "cpp",
    "conversions",
    "conversion_value",
    "roas",
    "cost_per_result",
    "inline_link_clicks",
    "cost_per_inline_link_click",
    "outbound_clicks",
    "video_views",
)


@dataclass
class SyncCounters:
    """Running totals for one sync job."""

    fetched_rows: int = 0
    upserted_rows: int = 0
    unchanged_rows: int = 0
    warnings_count: int = 0
    rows_by_level: Dict[str, int] = field(default_factory=dict)

    def snapshot(self) -> "SyncCounters":
        """Copy of the totals, taken after a level commits."""
        return replace(self, rows_by_level=dict(self.rows_by_level))


@dataclass
class EntityRef:
    """Identity and hierarchy of the entity a metrics row belongs to."""

    level: LevelEnum
    entity_id: str
    entity_name: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_id: Optional[str] = None
    adset_name: Optional[str] = None


def account_today(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Current calendar date in the account timezone (UTC when unknown)."""
    tz = timezone.utc
    if tz_name:
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("[SYNC] Invalid timezone '%s', falling back to UTC", tz_name)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz).date()


def resolve_sync_window(
    mode: SyncJobTypeEnum,
    tz: Optional[str] = None,
    today: Optional[date] = None,
    days_back: Optional[int] = None,
    default_days_back: int = 7,
) -> Tuple[date, date]:
    """Return the inclusive (date_from, date_to) window for a sync mode.

    - daily: yesterday in the account timezone
    - intraday: today
    - backfill: today - days_back .. today
    """
    today = today or account_today(tz)
    mode = SyncJobTypeEnum(mode)

    if mode == SyncJobTypeEnum.daily:
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday
    if mode == SyncJobTypeEnum.intraday:
        return today, today

    days = days_back if days_back and days_back > 0 else default_days_back
    return today - timedelta(days=days), today


def get_connection_or_404(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    provider: Optional[ProviderEnum] = None,
) -> Connection:
    connection = (
        db.query(Connection)
        .filter(
            Connection.id == connection_id,
            Connection.workspace_id == workspace_id,
        )
        .first()
    )

    if not connection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found or does not belong to workspace",
        )

    if provider is not None and connection.provider != provider:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Connection is not a {provider.value} connection (provider={connection.provider.value})",
        )

    return connection


def start_sync_job(
    db: Session,
    connection: Connection,
    job_type: SyncJobTypeEnum,
    date_from: date,
    date_to: date,
    levels: List[str],
) -> SyncJob:
    """Create a `running` job and flag the connection as syncing."""
    job = SyncJob(
        workspace_id=connection.workspace_id,
        connection_id=connection.id,
        provider=connection.provider,
        job_type=job_type,
        status=SyncJobStatusEnum.running,
        date_from=date_from,
        date_to=date_to,
        levels=list(levels),
        started_at=datetime.utcnow(),
    )
    db.add(job)
    connection.status = ConnectionStatus.syncing
    db.add(connection)
    db.commit()
    db.refresh(job)

    logger.info(
        "[SYNC] Job %s started: %s %s sync, %s to %s, levels=%s",
        job.id,
        connection.provider.value,
        job_type.value,
        date_from,
        date_to,
        ",".join(levels),
    )
    return job


def _get_or_create_state(db: Session, connection: Connection) -> SyncState:
    state = db.query(SyncState).filter(SyncState.connection_id == connection.id).first()
    if state is None:
        state = SyncState(connection_id=connection.id, consecutive_failures=0)
        db.add(state)
    return state


def complete_sync_job(
    db: Session,
    job: SyncJob,
    connection: Connection,
    counters: SyncCounters,
) -> SyncJob:
    """Mark the job completed and advance the connection's sync state."""
    now = datetime.utcnow()
    job.status = SyncJobStatusEnum.completed
    job.fetched_rows = counters.fetched_rows
    job.upserted_rows = counters.upserted_rows
    job.unchanged_rows = counters.unchanged_rows
    job.warnings_count = counters.warnings_count
    job.finished_at = now
    job.duration_seconds = (now - job.started_at).total_seconds() if job.started_at else None

    state = _get_or_create_state(db, connection)
    if job.job_type == SyncJobTypeEnum.intraday:
        state.last_intraday_synced_at = now
    elif job.date_to:
        # Today is still accumulating; only days up to yesterday are complete
        last_complete = min(job.date_to, account_today(connection.timezone) - timedelta(days=1))
        if not state.last_daily_date_synced or state.last_daily_date_synced < last_complete:
            state.last_daily_date_synced = last_complete
    state.last_success_at = now
    state.last_error = None
    state.consecutive_failures = 0

    connection.status = ConnectionStatus.active
    db.add_all([job, state, connection])
    db.commit()

    logger.info(
        "[SYNC] Job %s completed: fetched=%s upserted=%s unchanged=%s warnings=%s (%.1fs)",
        job.id,
        counters.fetched_rows,
        counters.upserted_rows,
        counters.unchanged_rows,
        counters.warnings_count,
        job.duration_seconds or 0.0,
    )
    return job


def fail_sync_job(
    db: Session,
    job: SyncJob,
    connection: Connection,
    error: str,
    counters: Optional[SyncCounters] = None,
    connection_status: str = ConnectionStatus.error,
    requires_reconnect: bool = False,
) -> SyncJob:
    """Mark the job failed and record the error on the sync state.

    `counters` should hold the totals of committed levels only, since the
    rollback below discards whatever the failing level had written.
    """
    # Discard half-written rows from the failed level
    db.rollback()

    now = datetime.utcnow()
    job.status = SyncJobStatusEnum.failed
    job.error_message = error[:2000]
    job.finished_at = now
    job.duration_seconds = (now - job.started_at).total_seconds() if job.started_at else None
    if counters is not None:
        job.fetched_rows = counters.fetched_rows
        job.upserted_rows = counters.upserted_rows
        job.unchanged_rows = counters.unchanged_rows
        job.warnings_count = counters.warnings_count

    state = _get_or_create_state(db, connection)
    state.last_error = error[:2000]
    state.last_error_at = now
    state.consecutive_failures = (state.consecutive_failures or 0) + 1

    connection.status = connection_status
    if requires_reconnect:
        connection.requires_reconnect = True
    db.add_all([job, state, connection])
    db.commit()

    logger.error("[SYNC] Job %s failed: %s", job.id, error)
    return job


def parse_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def record_raw_insight(
    db: Session,
    job: SyncJob,
    connection: Connection,
    level: LevelEnum,
    entity_id: Optional[str],
    payload: Dict[str, Any],
) -> InsightRaw:
    """Store the row exactly as received for auditing / reprocessing."""
    raw = InsightRaw(
        workspace_id=connection.workspace_id,
        connection_id=connection.id,
        sync_job_id=job.id,
        provider=connection.provider,
        level=level,
        entity_id=entity_id,
        date_start=parse_date(payload.get("date_start") or payload.get("date")),
        date_stop=parse_date(payload.get("date_stop") or payload.get("date")),
        payload=payload,
    )
    db.add(raw)
    return raw


def upsert_insight_daily(
    db: Session,
    connection: Connection,
    entity: EntityRef,
    metrics_date: date,
    metrics: ExtractedMetrics,
    leads: float = 0,
    currency: Optional[str] = None,
) -> str:
    """UPSERT one insights_daily row by (workspace, connection, level, entity, date).

    Returns:
        "created", "updated" or "unchanged" (existing row with equal metrics)
    """
    existing = (
        db.query(InsightDaily)
        .filter(
            InsightDaily.workspace_id == connection.workspace_id,
            InsightDaily.connection_id == connection.id,
            InsightDaily.level == entity.level,
            InsightDaily.entity_id == entity.entity_id,
            InsightDaily.date == metrics_date,
        )
        .first()
    )

    if existing is not None and not has_metrics_changed(existing, metrics, leads):
        return UPSERT_UNCHANGED

    row = existing or InsightDaily(
        workspace_id=connection.workspace_id,
        connection_id=connection.id,
        provider=connection.provider,
        level=entity.level,
        entity_id=entity.entity_id,
        date=metrics_date,
    )
    for column in METRIC_COLUMNS:
        setattr(row, column, getattr(metrics, column))
    row.leads = leads
    row.entity_name = entity.entity_name
    row.campaign_id = entity.campaign_id
    row.campaign_name = entity.campaign_name
    row.adset_id = entity.adset_id
    row.adset_name = entity.adset_name
    row.actions_json = metrics.actions_raw
    row.action_values_json = metrics.action_values_raw
    row.currency = currency or connection.currency_code
    row.updated_at = datetime.utcnow()

    db.add(row)
    db.flush()
    return UPSERT_UPDATED if existing is not None else UPSERT_CREATED


def count_upsert(counters: SyncCounters, outcome: str) -> None:
    if outcome == UPSERT_UNCHANGED:
        counters.unchanged_rows += 1
    else:
        counters.upserted_rows += 1


def get_sync_history(db: Session, connection_id: UUID, limit: int = 10) -> List[SyncJob]:
    """Most recent sync jobs for a connection, newest first."""
    return (
        db.query(SyncJob)
        .filter(SyncJob.connection_id == connection_id)
        .order_by(desc(SyncJob.started_at))
        .limit(limit)
        .all()
    )
