"""Sync status endpoints: data gaps, current status and job history.

REFERENCES:
    - adpulse/services/sync_status_service.py
    - adpulse/services/gap_detector.py
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from adpulse.deps import Settings, get_app_settings, get_cache, get_db
from adpulse.schemas import GapDetectionOut, SyncJobOut, SyncStatusOut
from adpulse.services.cache import TTLCache
from adpulse.services.sync_jobs import get_connection_or_404, get_sync_history
from adpulse.services.sync_status_service import get_connection_gaps, get_sync_status

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/connections/{connection_id}/sync",
    tags=["Sync Status"],
)

DEFAULT_GAP_WINDOW_DAYS = 30


@router.get("/gaps", response_model=GapDetectionOut)
def connection_gaps(
    workspace_id: UUID,
    connection_id: UUID,
    date_from: Optional[date] = Query(default=None, description="First day (default: 29 days before date_to)"),
    date_to: Optional[date] = Query(default=None, description="Last day (default: today, UTC)"),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    settings: Settings = Depends(get_app_settings),
):
    """Days without campaign-level data, grouped into gaps."""
    date_to = date_to or datetime.now(timezone.utc).date()
    date_from = date_from or date_to - timedelta(days=DEFAULT_GAP_WINDOW_DAYS - 1)

    return get_connection_gaps(
        db,
        cache,
        workspace_id,
        connection_id,
        date_from,
        date_to,
        ttl_seconds=settings.CACHE_TTL_SECONDS,
    )


@router.get("/status", response_model=SyncStatusOut)
def connection_sync_status(
    workspace_id: UUID,
    connection_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> SyncStatusOut:
    return get_sync_status(
        db,
        workspace_id,
        connection_id,
        warning_days=settings.TOKEN_EXPIRY_WARNING_DAYS,
    )


@router.get("/history", response_model=List[SyncJobOut])
def connection_sync_history(
    workspace_id: UUID,
    connection_id: UUID,
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Most recent sync jobs, newest first."""
    connection = get_connection_or_404(db, workspace_id, connection_id)
    return get_sync_history(db, connection.id, limit=limit)
