"""
Metric Aggregation & Formatting Tests (Unit)
============================================

WHAT: Unit tests for summing daily rows, rate derivation and display strings.
WHY: Summed platform rates are meaningless; rates must be re-derived from
     aggregated counts and ROAS must come from real conversion value.

REFERENCES:
- backend/adpulse/metrics/aggregation.py
- backend/adpulse/metrics/formatters.py
"""

from datetime import date
from types import SimpleNamespace

import pytest

from adpulse.metrics.aggregation import (
    aggregate_by_date,
    aggregate_by_entity,
    compare_periods,
    derive_rates,
    percent_change,
    sum_rows,
)
from adpulse.metrics.extractor import ExtractedMetrics
from adpulse.metrics.formatters import (
    currency_symbol,
    fmt_decimal_count,
    format_delta_pct,
    format_metric_value,
    format_metrics_for_display,
)


def _row(entity_id, day, **values):
    base = {
        "entity_id": entity_id,
        "entity_name": f"Entity {entity_id}",
        "level": SimpleNamespace(value="campaign"),
        "date": day,
        "impressions": 0,
        "clicks": 0,
        "spend": 0,
        "reach": 0,
        "conversions": 0,
        "conversion_value": 0,
    }
    base.update(values)
    return SimpleNamespace(**base)


def test_derive_rates_from_counts() -> None:
    totals = derive_rates({
        "impressions": 2000.0,
        "clicks": 50.0,
        "spend": 100.0,
        "reach": 1000.0,
        "conversions": 4.0,
        "conversion_value": 300.0,
    })

    assert totals["ctr"] == pytest.approx(2.5)
    assert totals["cpc"] == pytest.approx(2.0)
    assert totals["cpm"] == pytest.approx(50.0)
    assert totals["frequency"] == pytest.approx(2.0)
    assert totals["roas"] == pytest.approx(3.0)
    assert totals["cost_per_result"] == pytest.approx(25.0)


def test_derive_rates_handles_zero_denominators() -> None:
    totals = derive_rates({"spend": 10.0})

    assert totals["ctr"] == 0.0
    assert totals["cpc"] == 0.0
    assert totals["roas"] == 0.0
    assert totals["cost_per_result"] == 0.0


def test_sum_rows_accepts_dicts_and_objects() -> None:
    rows = [
        {"impressions": 100, "clicks": 10, "spend": "5.5"},
        SimpleNamespace(impressions=300, clicks=30, spend=4.5, conversions=None),
    ]

    totals = sum_rows(rows)

    assert totals["impressions"] == 400
    assert totals["spend"] == pytest.approx(10.0)
    assert totals["ctr"] == pytest.approx(10.0)


def test_aggregate_by_entity_sorted_by_spend() -> None:
    rows = [
        _row("a", date(2025, 1, 1), spend=10, impressions=100, clicks=5),
        _row("b", date(2025, 1, 1), spend=50, impressions=500, clicks=10),
        _row("a", date(2025, 1, 3), spend=15, impressions=100, clicks=5),
    ]

    result = aggregate_by_entity(rows)

    assert [item["entity_id"] for item in result] == ["b", "a"]
    a = result[1]
    assert a["level"] == "campaign"
    assert a["first_date"] == "2025-01-01"
    assert a["last_date"] == "2025-01-03"
    assert a["days_with_data"] == 2
    assert a["metrics"]["spend"] == 25
    assert a["metrics"]["ctr"] == pytest.approx(5.0)


def test_aggregate_by_date_ascending() -> None:
    rows = [
        _row("a", date(2025, 1, 2), spend=5),
        _row("a", date(2025, 1, 1), spend=1),
        _row("b", date(2025, 1, 2), spend=7),
    ]

    result = aggregate_by_date(rows)

    assert [item["date"] for item in result] == ["2025-01-01", "2025-01-02"]
    assert result[1]["metrics"]["spend"] == 12


def test_percent_change_and_compare_periods() -> None:
    assert percent_change(120, 100) == pytest.approx(20.0)
    assert percent_change(5, 0) is None

    comparison = compare_periods(
        [{"spend": 120, "impressions": 1000}],
        [{"spend": 100, "impressions": 1000}],
    )

    assert comparison["change_pct"]["spend"] == pytest.approx(20.0)
    assert comparison["change_pct"]["impressions"] == pytest.approx(0.0)
    assert comparison["change_pct"]["roas"] is None


def test_format_metrics_for_display() -> None:
    metrics = ExtractedMetrics(
        impressions=12345,
        clicks=100,
        spend=1234.5,
        conversions=3.0,
        conversion_value=2469.0,
        ctr=0.81,
        roas=2.0,
    )

    formatted = format_metrics_for_display(metrics, "EUR")

    assert formatted["spend"] == "€1,234.50"
    assert formatted["impressions"] == "12,345"
    assert formatted["conversions"] == "3"
    assert formatted["ctr"] == "0.81%"
    assert formatted["roas"] == "2.00x"


def test_format_helpers() -> None:
    assert currency_symbol(None) == "$"
    assert currency_symbol("chf") == "CHF "
    assert fmt_decimal_count(2.5) == "2.5"
    assert format_metric_value("spend", None) == "N/A"
    assert format_metric_value("unknown_metric", 1.234) == "1.23"
    assert format_delta_pct(19.04) == "+19.0%"
    assert format_delta_pct(-3.0) == "-3.0%"
    assert format_delta_pct(None) == "N/A"
