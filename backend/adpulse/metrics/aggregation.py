"""Metric aggregation across days and entities.

WHAT:
    Folds daily insight rows (campaign / ad set / ad level) into per-entity
    and per-day totals, derives CTR/CPC/CPM/frequency/ROAS/cost per result
    from the summed base measures, and compares two periods.

WHY:
    Platform-reported rates cannot be summed; they are re-derived from the
    aggregated counts. ROAS always uses the stored real conversion value.

REFERENCES:
    - adpulse/routers/metrics.py (entity and daily endpoints)
    - adpulse/metrics/extractor.py (produces the stored base measures)
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, List, Optional

SUMMED_FIELDS = (
    "impressions",
    "clicks",
    "spend",
    "reach",
    "conversions",
    "conversion_value",
)

DERIVED_FIELDS = ("ctr", "cpc", "cpm", "frequency", "roas", "cost_per_result")

COMPARED_FIELDS = SUMMED_FIELDS + DERIVED_FIELDS


def _value(row: Any, key: str, default: Any = None) -> Any:
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)


def _number(row: Any, key: str) -> float:
    raw = _value(row, key)
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0


def _date_key(raw: Any) -> str:
    if isinstance(raw, date):
        return raw.isoformat()
    return str(raw)[:10]


def empty_totals() -> Dict[str, float]:
    totals = {field: 0.0 for field in SUMMED_FIELDS}
    totals.update({field: 0.0 for field in DERIVED_FIELDS})
    return totals


def derive_rates(totals: Dict[str, float]) -> Dict[str, float]:
    """Compute derived metrics in place from summed base measures."""
    impressions = totals.get("impressions", 0.0)
    clicks = totals.get("clicks", 0.0)
    spend = totals.get("spend", 0.0)
    reach = totals.get("reach", 0.0)
    conversions = totals.get("conversions", 0.0)
    conversion_value = totals.get("conversion_value", 0.0)

    totals["ctr"] = clicks / impressions * 100 if impressions > 0 else 0.0
    totals["cpc"] = spend / clicks if clicks > 0 else 0.0
    totals["cpm"] = spend / impressions * 1000 if impressions > 0 else 0.0
    totals["frequency"] = impressions / reach if reach > 0 else 0.0
    totals["roas"] = conversion_value / spend if spend > 0 and conversion_value > 0 else 0.0
    totals["cost_per_result"] = spend / conversions if conversions > 0 else 0.0
    return totals


def sum_rows(rows: Iterable[Any]) -> Dict[str, float]:
    """Sum base measures over rows and derive rates."""
    totals = empty_totals()
    for row in rows:
        for field in SUMMED_FIELDS:
            totals[field] += _number(row, field)
    return derive_rates(totals)


def aggregate_by_entity(rows: Iterable[Any]) -> List[Dict[str, Any]]:
    """Group rows by entity id, highest spend first.

    Each item carries entity_id, entity_name, level, first_date, last_date,
    days_with_data and a `metrics` dict of totals plus derived rates.
    """
    grouped: Dict[str, Dict[str, Any]] = {}

    for row in rows:
        entity_id = str(_value(row, "entity_id"))
        day = _date_key(_value(row, "date"))
        item = grouped.get(entity_id)
        if item is None:
            item = {
                "entity_id": entity_id,
                "entity_name": _value(row, "entity_name") or entity_id,
                "level": _level_name(_value(row, "level")),
                "first_date": day,
                "last_date": day,
                "days": set(),
                "metrics": empty_totals(),
            }
            grouped[entity_id] = item

        for field in SUMMED_FIELDS:
            item["metrics"][field] += _number(row, field)
        item["days"].add(day)
        if day < item["first_date"]:
            item["first_date"] = day
        if day > item["last_date"]:
            item["last_date"] = day

    results: List[Dict[str, Any]] = []
    for item in grouped.values():
        derive_rates(item["metrics"])
        item["days_with_data"] = len(item.pop("days"))
        results.append(item)

    results.sort(key=lambda entry: entry["metrics"]["spend"], reverse=True)
    return results


def aggregate_by_date(rows: Iterable[Any]) -> List[Dict[str, Any]]:
    """Totals per calendar date, ascending."""
    grouped: Dict[str, Dict[str, float]] = {}
    for row in rows:
        day = _date_key(_value(row, "date"))
        totals = grouped.setdefault(day, empty_totals())
        for field in SUMMED_FIELDS:
            totals[field] += _number(row, field)

    return [
        {"date": day, "metrics": derive_rates(totals)}
        for day, totals in sorted(grouped.items())
    ]


def percent_change(current: float, previous: float) -> Optional[float]:
    """Percent change from previous to current; None when previous is 0."""
    if not previous:
        return None
    return (current - previous) / previous * 100


def compare_periods(current_rows: Iterable[Any], previous_rows: Iterable[Any]) -> Dict[str, Any]:
    """Period-over-period totals and percent change per metric."""
    current = sum_rows(current_rows)
    previous = sum_rows(previous_rows)
    return {
        "current": current,
        "previous": previous,
        "change_pct": {
            field: percent_change(current[field], previous[field])
            for field in COMPARED_FIELDS
        },
    }


def _level_name(level: Any) -> Optional[str]:
    if level is None:
        return None
    return getattr(level, "value", level)
