"""
Sync Change Detection Tests (Unit)
==================================

WHAT: Unit tests for has_metrics_changed.
WHY: Intraday polling must skip identical rows but never miss a real change,
     including differences below the float noise of API strings.

REFERENCES:
- backend/adpulse/services/sync_comparison.py
"""

from decimal import Decimal

from adpulse.metrics.extractor import ExtractedMetrics
from adpulse.models import InsightDaily
from adpulse.services.sync_comparison import has_metrics_changed


def _stored(**overrides) -> InsightDaily:
    values = dict(
        impressions=1000,
        clicks=20,
        spend=Decimal("12.3400"),
        reach=900,
        frequency=1.11,
        ctr=2.0,
        cpc=0.617,
        cpm=12.34,
        cpp=13.71,
        conversions=Decimal("2.0000"),
        conversion_value=Decimal("50.0000"),
        roas=4.0519,
        cost_per_result=6.17,
        leads=Decimal("0"),
        inline_link_clicks=15,
        cost_per_inline_link_click=0.8227,
        outbound_clicks=10,
        video_views=0,
    )
    values.update(overrides)
    return InsightDaily(**values)


def _extracted(**overrides) -> ExtractedMetrics:
    values = dict(
        impressions=1000,
        clicks=20,
        spend=12.34,
        reach=900,
        frequency=1.11,
        ctr=2.0,
        cpc=0.617,
        cpm=12.34,
        cpp=13.71,
        conversions=2.0,
        conversion_value=50.0,
        roas=4.0519,
        cost_per_result=6.17,
        inline_link_clicks=15,
        cost_per_inline_link_click=0.8227,
        outbound_clicks=10,
        video_views=0.0,
    )
    values.update(overrides)
    return ExtractedMetrics(**values)


def test_identical_metrics_are_unchanged() -> None:
    assert has_metrics_changed(_stored(), _extracted()) is False


def test_float_noise_below_storage_precision_is_unchanged() -> None:
    assert has_metrics_changed(_stored(), _extracted(spend=12.340000001)) is False


def test_spend_change_is_detected() -> None:
    assert has_metrics_changed(_stored(), _extracted(spend=12.35)) is True


def test_count_change_is_detected() -> None:
    assert has_metrics_changed(_stored(), _extracted(clicks=21)) is True


def test_leads_change_is_detected() -> None:
    assert has_metrics_changed(_stored(), _extracted(), leads=1) is True


def test_missing_stored_values_compare_as_zero() -> None:
    stored = InsightDaily()

    assert has_metrics_changed(stored, ExtractedMetrics()) is False
    assert has_metrics_changed(stored, ExtractedMetrics(impressions=1)) is True
