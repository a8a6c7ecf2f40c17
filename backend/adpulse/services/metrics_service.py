"""Read-side metrics service.

WHAT:
    Loads `insights_daily` rows for a connection and folds them into
    per-entity totals, per-day totals and a period-over-period comparison.

WHY:
    Routers stay thin; the aggregation math lives in adpulse.metrics.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, List
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from adpulse.metrics.aggregation import aggregate_by_date, aggregate_by_entity, compare_periods
from adpulse.metrics.formatters import format_metrics_for_display
from adpulse.models import InsightDaily, LevelEnum
from adpulse.services.sync_jobs import get_connection_or_404

logger = logging.getLogger(__name__)


def _validate_range(date_from: date, date_to: date) -> None:
    if date_from > date_to:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_from must be on or before date_to",
        )


def get_insight_rows(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    level: LevelEnum,
    date_from: date,
    date_to: date,
) -> List[InsightDaily]:
    return (
        db.query(InsightDaily)
        .filter(
            InsightDaily.workspace_id == workspace_id,
            InsightDaily.connection_id == connection_id,
            InsightDaily.level == level,
            InsightDaily.date >= date_from,
            InsightDaily.date <= date_to,
        )
        .order_by(InsightDaily.date)
        .all()
    )


def get_entity_metrics(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    level: LevelEnum,
    date_from: date,
    date_to: date,
) -> List[Dict[str, Any]]:
    """Per-entity totals, highest spend first, with display strings."""
    _validate_range(date_from, date_to)
    connection = get_connection_or_404(db, workspace_id, connection_id)
    rows = get_insight_rows(db, workspace_id, connection.id, level, date_from, date_to)

    entities = aggregate_by_entity(rows)
    for entity in entities:
        entity["formatted"] = format_metrics_for_display(entity["metrics"], connection.currency_code)

    logger.info(
        "[METRICS] %d %s entities for connection %s (%s to %s)",
        len(entities), level.value, connection_id, date_from, date_to,
    )
    return entities


def get_daily_metrics(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    date_from: date,
    date_to: date,
) -> List[Dict[str, Any]]:
    """Account totals per day from campaign-level rows (no double counting)."""
    _validate_range(date_from, date_to)
    connection = get_connection_or_404(db, workspace_id, connection_id)
    rows = get_insight_rows(db, workspace_id, connection.id, LevelEnum.campaign, date_from, date_to)
    return aggregate_by_date(rows)


def get_period_comparison(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    date_from: date,
    date_to: date,
) -> Dict[str, Any]:
    """Compare [date_from, date_to] with the same-length period just before it."""
    _validate_range(date_from, date_to)
    connection = get_connection_or_404(db, workspace_id, connection_id)

    length = (date_to - date_from).days + 1
    previous_to = date_from - timedelta(days=1)
    previous_from = previous_to - timedelta(days=length - 1)

    current = get_insight_rows(db, workspace_id, connection.id, LevelEnum.campaign, date_from, date_to)
    previous = get_insight_rows(db, workspace_id, connection.id, LevelEnum.campaign, previous_from, previous_to)
    return compare_periods(current, previous)
