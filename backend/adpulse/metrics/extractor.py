"""Metrics extraction for raw ad-platform insight rows.

WHAT:
    Turns one raw insights row (as returned by the Meta Insights API) into a
    flat `ExtractedMetrics` record ready to be persisted in `insights_daily`.
    Also provides an advisory validator that reports data-quality warnings.

WHY:
    - Single place where conversions and conversion value are pulled out of
      the `actions` / `action_values` arrays, so every sync path agrees.
    - Rate metrics (ctr/cpc/cpm/cpp) are copied from the platform, never
      recomputed: Meta's definitions differ from naive count ratios.
    - ROAS uses the REAL conversion value reported by the platform. There is
      no estimated-revenue fallback.

REFERENCES:
    - adpulse/services/meta_sync_service.py (main consumer)
    - adpulse/services/google_sync_service.py (builds the same record)
    - https://developers.facebook.com/docs/marketing-api/insights/parameters
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


# Ordered from most specific to most generic. First match wins.
CONVERSION_ACTION_TYPES: Sequence[str] = (
    "offsite_conversion.fb_pixel_purchase",
    "purchase",
    "omni_purchase",
    "app_custom_event.fb_mobile_purchase",
)

VIDEO_VIEW_ACTION_TYPES: Sequence[str] = ("video_view",)

LEAD_ACTION_TYPES: Sequence[str] = (
    "lead",
    "onsite_conversion.lead_grouped",
    "offsite_conversion.fb_pixel_lead",
)

_INT_PREFIX = re.compile(r"^\s*[+-]?\d+")
_FLOAT_PREFIX = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


@dataclass
class ExtractedMetrics:
    """Flat, normalized metrics for one entity on one date."""

    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    reach: int = 0
    frequency: float = 0.0

    # Platform-computed rates, copied verbatim
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    cpp: float = 0.0

    conversions: float = 0.0
    conversion_value: float = 0.0
    roas: float = 0.0
    cost_per_result: float = 0.0

    inline_link_clicks: int = 0
    cost_per_inline_link_click: float = 0.0
    outbound_clicks: int = 0

    video_views: float = 0.0

    # Kept for auditing; None when the platform sent nothing
    actions_raw: Optional[List[Dict[str, Any]]] = None
    action_values_raw: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_float(value: Any) -> float:
    """Lenient float parsing: leading numeric portion, 0.0 otherwise."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    match = _FLOAT_PREFIX.match(str(value))
    if not match:
        return 0.0
    number = float(match.group(0))
    return number if math.isfinite(number) else 0.0


def parse_int(value: Any) -> int:
    """Lenient integer parsing: "12.7" -> 12, "abc" -> 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    match = _INT_PREFIX.match(str(value))
    return int(match.group(0)) if match else 0


def _as_action_list(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, (list, tuple)):
        return []
    return [dict(item) for item in value if isinstance(item, Mapping)]


def extract_action_value(
    actions: Optional[Sequence[Mapping[str, Any]]],
    action_types: Sequence[str],
) -> float:
    """Return the value of the first matching action type, in priority order.

    Args:
        actions: `actions` or `action_values` array from the insights API
        action_types: Action types to look for, most specific first

    Returns:
        Parsed value of the first action type present with a non-empty value,
        or 0.0 when none match.
    """
    if not isinstance(actions, (list, tuple)):
        return 0.0

    for action_type in action_types:
        for action in actions:
            if not isinstance(action, Mapping):
                continue
            if action.get("action_type") == action_type:
                if action.get("value"):
                    return parse_float(action["value"])
                break

    return 0.0


def extract_metrics_from_insight(insight: Mapping[str, Any]) -> ExtractedMetrics:
    """Extract every metric from one raw insight row.

    WHAT:
        Parses numeric fields (strings from the API), selects conversions and
        conversion value by priority list, computes ROAS and cost per result.
    WHY:
        All sync paths share one extraction so stored rows are consistent.

    Never raises: malformed numeric input or action arrays degrade to 0.
    """
    actions = _as_action_list(insight.get("actions"))
    action_values = _as_action_list(insight.get("action_values"))

    conversions = extract_action_value(actions, CONVERSION_ACTION_TYPES)
    conversion_value = extract_action_value(action_values, CONVERSION_ACTION_TYPES)
    video_views = extract_action_value(actions, VIDEO_VIEW_ACTION_TYPES)

    spend = parse_float(insight.get("spend"))
    impressions = parse_int(insight.get("impressions"))
    clicks = parse_int(insight.get("clicks"))

    roas = conversion_value / spend if conversion_value > 0 and spend > 0 else 0.0
    cost_per_result = spend / conversions if conversions > 0 else 0.0

    logger.info(
        "[METRICS] Extracted metrics: date=%s conversions=%s value=%s spend=%s roas=%.4f "
        "impressions=%s clicks=%s has_actions=%s has_action_values=%s",
        insight.get("date_start") or insight.get("date"),
        conversions,
        conversion_value,
        spend,
        roas,
        impressions,
        clicks,
        bool(actions),
        bool(action_values),
    )

    return ExtractedMetrics(
        impressions=impressions,
        clicks=clicks,
        spend=spend,
        reach=parse_int(insight.get("reach")),
        frequency=parse_float(insight.get("frequency")),
        ctr=parse_float(insight.get("ctr")),
        cpc=parse_float(insight.get("cpc")),
        cpm=parse_float(insight.get("cpm")),
        cpp=parse_float(insight.get("cpp")),
        conversions=conversions,
        conversion_value=conversion_value,
        roas=roas,
        cost_per_result=cost_per_result,
        inline_link_clicks=parse_int(insight.get("inline_link_clicks")),
        cost_per_inline_link_click=parse_float(insight.get("cost_per_inline_link_click")),
        outbound_clicks=_parse_outbound_clicks(insight.get("outbound_clicks")),
        video_views=video_views,
        actions_raw=actions or None,
        action_values_raw=action_values or None,
    )


def _parse_outbound_clicks(value: Any) -> int:
    # The Graph API returns outbound_clicks as an actions-style array
    if isinstance(value, (list, tuple)):
        return int(sum(parse_float(item.get("value")) for item in value if isinstance(item, Mapping)))
    return parse_int(value)


def validate_extracted_metrics(metrics: ExtractedMetrics) -> List[str]:
    """Return advisory data-quality warnings (empty list when consistent)."""
    warnings: List[str] = []

    if metrics.clicks > metrics.impressions:
        warnings.append("Clicks exceed impressions: inconsistent data")

    if metrics.spend > 0 and metrics.impressions == 0:
        warnings.append("Spend without impressions: possible sync error")

    if metrics.conversions > 0 and metrics.conversion_value == 0:
        warnings.append("Conversions without value: check that the pixel reports purchase values")

    if metrics.conversions > 0 and not metrics.actions_raw:
        warnings.append("Conversions present but actions_raw is empty: possible extraction problem")

    if metrics.ctr > 100:
        warnings.append("CTR above 100%: inconsistent data from the API")

    return warnings
