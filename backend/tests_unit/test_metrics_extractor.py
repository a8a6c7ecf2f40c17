"""
Metrics Extractor Tests (Unit)
==============================

WHAT: Unit tests for insight-row extraction and the advisory validator.
WHY: Every sync path stores what the extractor returns; wrong priority order
     or a silent ROAS fallback would corrupt reporting for every account.

NOTE:
These tests live outside `backend/adpulse/tests/` to avoid loading the
integration-test `conftest.py`.

REFERENCES:
- backend/adpulse/metrics/extractor.py
"""

import pytest

from adpulse.metrics.extractor import (
    CONVERSION_ACTION_TYPES,
    LEAD_ACTION_TYPES,
    ExtractedMetrics,
    extract_action_value,
    extract_metrics_from_insight,
    parse_float,
    parse_int,
    validate_extracted_metrics,
)


def test_parse_float_and_int_are_lenient() -> None:
    assert parse_float("12.5") == 12.5
    assert parse_float("3.5abc") == 3.5
    assert parse_float("abc") == 0.0
    assert parse_float(None) == 0.0
    assert parse_float(float("nan")) == 0.0
    assert parse_int("12.7") == 12
    assert parse_int("x") == 0
    assert parse_int(7.9) == 7


def test_extract_action_value_respects_priority_order() -> None:
    actions = [
        {"action_type": "purchase", "value": "3"},
        {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "5"},
    ]

    assert extract_action_value(actions, CONVERSION_ACTION_TYPES) == 5.0


def test_extract_action_value_skips_empty_value_for_next_type() -> None:
    actions = [
        {"action_type": "offsite_conversion.fb_pixel_purchase", "value": ""},
        {"action_type": "omni_purchase", "value": "4"},
    ]

    assert extract_action_value(actions, CONVERSION_ACTION_TYPES) == 4.0


def test_extract_action_value_no_match_returns_zero() -> None:
    assert extract_action_value([{"action_type": "link_click", "value": "9"}], CONVERSION_ACTION_TYPES) == 0.0
    assert extract_action_value(None, CONVERSION_ACTION_TYPES) == 0.0
    assert extract_action_value([], CONVERSION_ACTION_TYPES) == 0.0


def test_extract_metrics_full_row() -> None:
    insight = {
        "date_start": "2025-01-10",
        "impressions": "1000",
        "clicks": "50",
        "spend": "25.00",
        "reach": "800",
        "frequency": "1.25",
        "ctr": "5.0",
        "cpc": "0.5",
        "cpm": "25.0",
        "cpp": "31.25",
        "inline_link_clicks": "40",
        "cost_per_inline_link_click": "0.625",
        "outbound_clicks": [{"action_type": "outbound_click", "value": "30"}],
        "actions": [
            {"action_type": "purchase", "value": "2"},
            {"action_type": "video_view", "value": "120"},
        ],
        "action_values": [{"action_type": "purchase", "value": "100.00"}],
    }

    m = extract_metrics_from_insight(insight)

    assert m.impressions == 1000
    assert m.clicks == 50
    assert m.spend == 25.0
    assert m.reach == 800
    assert m.ctr == 5.0
    assert m.cpm == 25.0
    assert m.conversions == 2.0
    assert m.conversion_value == 100.0
    assert m.roas == pytest.approx(4.0)
    assert m.cost_per_result == pytest.approx(12.5)
    assert m.video_views == 120.0
    assert m.outbound_clicks == 30
    assert m.actions_raw and len(m.actions_raw) == 2
    assert m.action_values_raw == [{"action_type": "purchase", "value": "100.00"}]


def test_roas_is_zero_without_real_conversion_value() -> None:
    """No estimated revenue: conversions without value give ROAS 0."""
    m = extract_metrics_from_insight({
        "spend": "50",
        "impressions": "100",
        "actions": [{"action_type": "purchase", "value": "3"}],
    })

    assert m.conversions == 3.0
    assert m.conversion_value == 0.0
    assert m.roas == 0.0
    assert m.cost_per_result == pytest.approx(50 / 3)


def test_roas_is_zero_without_spend() -> None:
    m = extract_metrics_from_insight({
        "spend": "0",
        "action_values": [{"action_type": "purchase", "value": "80"}],
    })

    assert m.roas == 0.0
    assert m.cost_per_result == 0.0


def test_malformed_row_degrades_to_zeroes() -> None:
    m = extract_metrics_from_insight({"spend": "n/a", "impressions": None, "actions": "oops"})

    assert m == ExtractedMetrics()
    assert m.actions_raw is None


def test_non_list_action_arrays_degrade_to_zeroes() -> None:
    m = extract_metrics_from_insight({"spend": "10", "actions": 5, "action_values": 7.5})

    assert m.spend == 10.0
    assert m.conversions == 0.0
    assert m.conversion_value == 0.0
    assert m.actions_raw is None
    assert m.action_values_raw is None


def test_non_dict_action_entries_are_skipped() -> None:
    actions = ["purchase", None, 3, {"action_type": "lead", "value": "2"}]

    assert extract_action_value(actions, LEAD_ACTION_TYPES) == 2.0
    assert extract_action_value(5, LEAD_ACTION_TYPES) == 0.0

    m = extract_metrics_from_insight({
        "spend": "20",
        "actions": ["purchase", {"action_type": "purchase", "value": "4"}],
        "action_values": [{"action_type": "purchase", "value": "80"}, "oops"],
    })
    assert m.conversions == 4.0
    assert m.conversion_value == 80.0
    assert m.roas == 4.0
    assert m.actions_raw == [{"action_type": "purchase", "value": "4"}]


def test_rates_are_copied_not_recomputed() -> None:
    m = extract_metrics_from_insight({"impressions": "100", "clicks": "10", "ctr": "7.77"})

    assert m.ctr == 7.77


def test_validate_clean_metrics_has_no_warnings() -> None:
    m = ExtractedMetrics(impressions=100, clicks=5, spend=10.0)

    assert validate_extracted_metrics(m) == []


def test_validate_reports_each_inconsistency() -> None:
    m = ExtractedMetrics(impressions=0, clicks=5, spend=10.0, conversions=2.0, ctr=150.0)

    warnings = validate_extracted_metrics(m)

    assert len(warnings) == 5
    assert any("Clicks exceed impressions" in w for w in warnings)
    assert any("Spend without impressions" in w for w in warnings)
    assert any("Conversions without value" in w for w in warnings)
    assert any("actions_raw" in w for w in warnings)
    assert any("CTR above 100%" in w for w in warnings)


def test_to_dict_contains_every_field() -> None:
    data = ExtractedMetrics(spend=1.5).to_dict()

    assert data["spend"] == 1.5
    assert data["actions_raw"] is None
    assert "cost_per_inline_link_click" in data


def test_purchase_row_gives_real_roas_and_is_repeatable() -> None:
    row = {
        "spend": "50.00",
        "actions": [{"action_type": "purchase", "value": "3"}],
        "action_values": [{"action_type": "purchase", "value": "150.00"}],
    }

    first = extract_metrics_from_insight(row)

    assert first.conversions == 3.0
    assert first.conversion_value == 150.0
    assert first.roas == 3.0
    assert first.cost_per_result == pytest.approx(16.667, abs=1e-3)
    assert extract_metrics_from_insight(row) == first
