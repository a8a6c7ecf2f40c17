"""Metrics read endpoints (entity totals, daily totals, period comparison).

REFERENCES:
    - adpulse/services/metrics_service.py
    - adpulse/metrics/aggregation.py
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from adpulse.deps import get_db
from adpulse.models import LevelEnum
from adpulse.schemas import DailyMetricsOut, EntityMetricsOut, PeriodComparisonOut
from adpulse.services.metrics_service import (
    get_daily_metrics,
    get_entity_metrics,
    get_period_comparison,
)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/connections/{connection_id}/metrics",
    tags=["Metrics"],
)

DEFAULT_WINDOW_DAYS = 7


def _window(date_from: Optional[date], date_to: Optional[date]) -> Tuple[date, date]:
    date_to = date_to or datetime.now(timezone.utc).date()
    date_from = date_from or date_to - timedelta(days=DEFAULT_WINDOW_DAYS - 1)
    return date_from, date_to


@router.get("/entities", response_model=List[EntityMetricsOut])
def entity_metrics(
    workspace_id: UUID,
    connection_id: UUID,
    level: LevelEnum = Query(default=LevelEnum.campaign),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
):
    """Per-entity totals for a level, highest spend first."""
    start, end = _window(date_from, date_to)
    return get_entity_metrics(db, workspace_id, connection_id, level, start, end)


@router.get("/daily", response_model=List[DailyMetricsOut])
def daily_metrics(
    workspace_id: UUID,
    connection_id: UUID,
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
):
    start, end = _window(date_from, date_to)
    return get_daily_metrics(db, workspace_id, connection_id, start, end)


@router.get("/compare", response_model=PeriodComparisonOut)
def compare_metrics(
    workspace_id: UUID,
    connection_id: UUID,
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
):
    """Totals vs. the preceding period of equal length."""
    start, end = _window(date_from, date_to)
    return get_period_comparison(db, workspace_id, connection_id, start, end)
