"""
Metrics Module
==============

Pure metric utilities shared by the Meta and Google sync paths.

Related files:
- adpulse/metrics/extractor.py: raw insight row -> ExtractedMetrics
- adpulse/metrics/aggregation.py: per-entity / per-day totals, derived rates
- adpulse/metrics/formatters.py: display strings
"""

from adpulse.metrics.extractor import (
    CONVERSION_ACTION_TYPES,
    VIDEO_VIEW_ACTION_TYPES,
    ExtractedMetrics,
    extract_action_value,
    extract_metrics_from_insight,
    validate_extracted_metrics,
)
from adpulse.metrics.formatters import format_metrics_for_display

__all__ = [
    "CONVERSION_ACTION_TYPES",
    "VIDEO_VIEW_ACTION_TYPES",
    "ExtractedMetrics",
    "extract_action_value",
    "extract_metrics_from_insight",
    "validate_extracted_metrics",
    "format_metrics_for_display",
]
