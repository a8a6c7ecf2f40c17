"""Sync status service: data coverage, sync history and token health.

WHAT:
    - Looks up which days have campaign-level data for a connection
    - Runs gap detection over that lookup, memoized through the injected cache
    - Assembles the current sync status (state, latest job, token status)

WHY:
    Gap reports are requested on every dashboard load and scan
    `insights_daily`; caching them for CACHE_TTL_SECONDS keeps that cheap.
    Syncs clear the cache when they finish.

REFERENCES:
    - adpulse/services/gap_detector.py (pure gap logic)
    - adpulse/routers/sync_status.py
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import desc
from sqlalchemy.orm import Session

from adpulse.models import InsightDaily, LevelEnum, SyncJob, SyncState
from adpulse.schemas import SyncJobOut, SyncStateOut, SyncStatusOut, TokenStatusOut
from adpulse.services.cache import TTLCache
from adpulse.services.gap_detector import (
    calculate_backfill_days,
    detect_gaps,
    get_gap_summary,
)
from adpulse.services.sync_jobs import get_connection_or_404
from adpulse.services.token_service import get_token_status

logger = logging.getLogger(__name__)


def gaps_cache_key(connection_id: UUID, date_from: date, date_to: date) -> str:
    return f"gaps:{connection_id}:{date_from.isoformat()}:{date_to.isoformat()}"


def get_dates_with_data(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    date_from: date,
    date_to: date,
) -> List[str]:
    """Distinct ISO dates with campaign-level rows in [date_from, date_to]."""
    rows = (
        db.query(InsightDaily.date)
        .filter(
            InsightDaily.workspace_id == workspace_id,
            InsightDaily.connection_id == connection_id,
            InsightDaily.level == LevelEnum.campaign,
            InsightDaily.date >= date_from,
            InsightDaily.date <= date_to,
        )
        .distinct()
        .all()
    )
    return sorted(row[0].isoformat() for row in rows if row[0] is not None)


def get_connection_gaps(
    db: Session,
    cache: TTLCache,
    workspace_id: UUID,
    connection_id: UUID,
    date_from: date,
    date_to: date,
    *,
    ttl_seconds: Optional[int] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Gap report for a connection, serialized with camelCase keys.

    Returns:
        GapDetectionResult.to_dict() plus `summary` and `backfillDays`.
    """
    connection = get_connection_or_404(db, workspace_id, connection_id)

    key = gaps_cache_key(connection.id, date_from, date_to)
    cached = cache.get(key)
    if cached is not None:
        logger.info("[SYNC_STATUS] Gap report cache hit: %s", key)
        return cached

    result = detect_gaps(
        lambda: get_dates_with_data(db, workspace_id, connection.id, date_from, date_to),
        date_from,
        date_to,
        account_id=connection.external_account_id,
        today=today,
    )

    payload = result.to_dict()
    payload["summary"] = get_gap_summary(result.gaps)
    payload["backfillDays"] = calculate_backfill_days(result.gaps, today=today)

    cache.set(key, payload, ttl_seconds)
    return payload


def get_sync_status(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    warning_days: int = 7,
) -> SyncStatusOut:
    """Current sync state, latest job and token health for a connection."""
    connection = get_connection_or_404(db, workspace_id, connection_id)

    state = db.query(SyncState).filter(SyncState.connection_id == connection.id).first()
    latest_job = (
        db.query(SyncJob)
        .filter(SyncJob.connection_id == connection.id)
        .order_by(desc(SyncJob.started_at))
        .first()
    )
    token_status = get_token_status(
        connection.token,
        warning_days=warning_days,
        requires_reconnect=bool(connection.requires_reconnect),
    )

    return SyncStatusOut(
        connection_id=connection.id,
        provider=connection.provider,
        connection_status=connection.status,
        state=SyncStateOut.model_validate(state) if state else None,
        latest_job=SyncJobOut.model_validate(latest_job) if latest_job else None,
        token=TokenStatusOut(**token_status),
    )
