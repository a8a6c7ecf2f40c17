"""Sync gap detection.

WHAT:
    Compares the dates that have synced insight rows against every calendar
    date in an analysis window and reports the missing days grouped into
    contiguous gaps, plus a coverage percentage.

WHY:
    - Users need to see which days are missing before trusting totals.
    - The gap list drives automatic backfill (see `calculate_backfill_days`).
    - Reporting only: failures degrade to an empty result instead of an error.

REFERENCES:
    - adpulse/services/sync_status_service.py (DB lookup + caching)
    - adpulse/services/sync_scheduler.py (gap backfill job)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

DatesSource = Union[Iterable[str], Callable[[], Iterable[str]]]


@dataclass
class DataGap:
    """A maximal run of consecutive missing dates (inclusive)."""

    date_from: str
    date_to: str
    days: int

    def to_dict(self) -> Dict[str, Any]:
        return {"dateFrom": self.date_from, "dateTo": self.date_to, "days": self.days}


@dataclass
class GapDetectionResult:
    """Outcome of one gap detection run for an ad account."""

    account_id: str
    analyzed_from: str
    analyzed_to: str
    total_days_in_period: int = 0
    days_with_data: int = 0
    days_missing: int = 0
    gaps: List[DataGap] = field(default_factory=list)
    coverage_percent: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metaAdAccountId": self.account_id,
            "analyzedFrom": self.analyzed_from,
            "analyzedTo": self.analyzed_to,
            "totalDaysInPeriod": self.total_days_in_period,
            "daysWithData": self.days_with_data,
            "daysMissing": self.days_missing,
            "gaps": [gap.to_dict() for gap in self.gaps],
            "coveragePercent": self.coverage_percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GapDetectionResult":
        return cls(
            account_id=data["metaAdAccountId"],
            analyzed_from=data["analyzedFrom"],
            analyzed_to=data["analyzedTo"],
            total_days_in_period=data["totalDaysInPeriod"],
            days_with_data=data["daysWithData"],
            days_missing=data["daysMissing"],
            gaps=[DataGap(g["dateFrom"], g["dateTo"], g["days"]) for g in data["gaps"]],
            coverage_percent=data["coveragePercent"],
        )


def _to_date(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def generate_date_range(date_from: Union[str, date], date_to: Union[str, date]) -> List[str]:
    """Every ISO date from date_from to date_to inclusive; empty if reversed."""
    start = _to_date(date_from)
    end = _to_date(date_to)

    dates: List[str] = []
    current = start
    while current <= end:
        dates.append(current.isoformat())
        current += timedelta(days=1)
    return dates


def _make_gap(start: str, end: str) -> DataGap:
    days = (_to_date(end) - _to_date(start)).days + 1
    return DataGap(date_from=start, date_to=end, days=days)


def group_consecutive_dates(missing_dates: Iterable[str]) -> List[DataGap]:
    """Group missing ISO dates into contiguous gaps (sorted scan)."""
    ordered = sorted(set(missing_dates))
    if not ordered:
        return []

    gaps: List[DataGap] = []
    gap_start = gap_end = ordered[0]

    for current in ordered[1:]:
        if (_to_date(current) - _to_date(gap_end)).days == 1:
            gap_end = current
            continue
        gaps.append(_make_gap(gap_start, gap_end))
        gap_start = gap_end = current

    gaps.append(_make_gap(gap_start, gap_end))
    return gaps


def detect_gaps(
    dates_with_data: DatesSource,
    date_from: Union[str, date],
    date_to: Union[str, date],
    *,
    account_id: str = "",
    today: Optional[date] = None,
) -> GapDetectionResult:
    """Detect days without data inside [date_from, date_to].

    Args:
        dates_with_data: ISO dates known to have data, or a zero-argument
            callable performing the lookup (its errors are caught here)
        date_from: First day of the window (inclusive)
        date_to: Last day of the window (inclusive)
        account_id: Ad account identifier echoed in the result
        today: Current date; defaults to today in UTC. Never counted as missing.

    Returns:
        GapDetectionResult; a zeroed result if anything fails.
    """
    analyzed_from = str(date_from)[:10]
    analyzed_to = str(date_to)[:10]

    try:
        logger.info(
            "[GAP_DETECTOR] Detecting gaps: account=%s from=%s to=%s",
            account_id,
            analyzed_from,
            analyzed_to,
        )

        source = dates_with_data() if callable(dates_with_data) else dates_with_data

        all_dates = generate_date_range(date_from, date_to)
        window = set(all_dates)
        present = {str(value)[:10] for value in source} & window

        today_str = (today or _utc_today()).isoformat()
        missing = [d for d in all_dates if d not in present and d != today_str]

        gaps = group_consecutive_dates(missing)
        total = len(all_dates)

        result = GapDetectionResult(
            account_id=account_id,
            analyzed_from=analyzed_from,
            analyzed_to=analyzed_to,
            total_days_in_period=total,
            days_with_data=len(present),
            days_missing=len(missing),
            gaps=gaps,
            coverage_percent=_round_half_up(len(present) / total * 100) if total > 0 else 0,
        )

        logger.info(
            "[GAP_DETECTOR] account=%s coverage=%s%% gaps=%s days_missing=%s",
            account_id,
            result.coverage_percent,
            len(gaps),
            result.days_missing,
        )
        return result

    except Exception:
        logger.exception("[GAP_DETECTOR] Gap detection failed for account %s", account_id)
        return GapDetectionResult(
            account_id=account_id,
            analyzed_from=analyzed_from,
            analyzed_to=analyzed_to,
        )


def _format_day(value: str) -> str:
    return _to_date(value).strftime("%d %b")


def get_gap_summary(gaps: List[DataGap]) -> str:
    """Human-readable one-line summary of a gap list."""
    if not gaps:
        return "All days have data."

    if len(gaps) == 1:
        gap = gaps[0]
        if gap.days == 1:
            return f"1 day without data on {_format_day(gap.date_from)}"
        return (
            f"{gap.days} days without data between "
            f"{_format_day(gap.date_from)} and {_format_day(gap.date_to)}"
        )

    total_missing = sum(gap.days for gap in gaps)
    largest = gaps[0]
    for gap in gaps[1:]:
        if gap.days > largest.days:
            largest = gap

    return (
        f"{total_missing} days without data across {len(gaps)} periods. "
        f"Largest gap: {largest.days} days "
        f"({_format_day(largest.date_from)} to {_format_day(largest.date_to)})"
    )


def calculate_backfill_days(gaps: List[DataGap], today: Optional[date] = None) -> int:
    """Days to go back from today to cover the oldest gap (0 when none)."""
    if not gaps:
        return 0

    oldest = min(gaps, key=lambda gap: gap.date_from)
    diff_days = ((today or _utc_today()) - _to_date(oldest.date_from)).days
    return max(diff_days + 1, 1)
