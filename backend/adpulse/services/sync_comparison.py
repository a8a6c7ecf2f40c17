"""Metric comparison helpers for sync ingestion.

WHAT:
    Detects whether freshly extracted metric values actually differ from the
    stored `insights_daily` row before writing to the database.

WHY:
    - Allows aggressive polling (intraday) without rewriting identical rows.
    - Reduces unnecessary writes and keeps `updated_at` meaningful.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from adpulse.metrics.extractor import ExtractedMetrics
from adpulse.models import InsightDaily

# Numeric(18, 4) columns: compare at storage precision
DECIMAL_FIELDS: Iterable[str] = (
    "spend",
    "conversions",
    "conversion_value",
)

FLOAT_FIELDS: Iterable[str] = (
    "frequency",
    "ctr",
    "cpc",
    "cpm",
    "cpp",
    "roas",
    "cost_per_result",
    "cost_per_inline_link_click",
)

INT_FIELDS: Iterable[str] = (
    "impressions",
    "clicks",
    "reach",
    "inline_link_clicks",
    "outbound_clicks",
    "video_views",
)

_QUANTUM = Decimal("0.0001")


def _to_decimal(value: Any) -> Decimal:
    """Safe Decimal conversion at 4 decimal places (None -> 0)."""
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value)).quantize(_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return Decimal("0")


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    return int(value)


def has_metrics_changed(existing: InsightDaily, new_metrics: ExtractedMetrics, leads: float = 0) -> bool:
    """Return True if ANY metric field has changed."""
    for field in DECIMAL_FIELDS:
        if _to_decimal(getattr(existing, field)) != _to_decimal(getattr(new_metrics, field)):
            return True

    for field in FLOAT_FIELDS:
        if _to_decimal(getattr(existing, field)) != _to_decimal(getattr(new_metrics, field)):
            return True

    for field in INT_FIELDS:
        if _to_int(getattr(existing, field)) != _to_int(getattr(new_metrics, field)):
            return True

    if _to_decimal(existing.leads) != _to_decimal(leads):
        return True

    return False
