"""
Metric Formatters
=================

Display formatting for extracted and aggregated metrics.

Design principles:
- Pure functions: no side effects
- Explicit sets: easy to see which metrics use which format
- Rates arrive as PERCENT values (Meta's ctr=1.5 means 1.5%), never fractions

Used by:
- adpulse/routers/metrics.py (formatted totals next to raw numbers)
"""

from typing import Dict, Optional, Union

from .extractor import ExtractedMetrics


# Currency metrics: amounts with 2 decimals and a currency symbol
CURRENCY = {
    "spend",
    "conversion_value",
    "cpc",
    "cpm",
    "cpp",
    "cost_per_result",
    "cost_per_inline_link_click",
}

# Ratio metrics: multipliers (3.00x)
RATIOS_X = {
    "roas",
}

# Percentage metrics already expressed in percent (1.23%)
PERCENT = {
    "ctr",
}

# Count metrics: whole numbers with thousands separators
COUNTS = {
    "impressions",
    "clicks",
    "reach",
    "inline_link_clicks",
    "outbound_clicks",
    "video_views",
}

# Fractional counts (conversions can be attributed fractionally)
DECIMAL_COUNTS = {
    "conversions",
    "leads",
}

DISPLAY_FIELDS = (
    "impressions",
    "clicks",
    "spend",
    "conversions",
    "conversion_value",
    "ctr",
    "cpc",
    "cpm",
    "roas",
    "cost_per_result",
)

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "BRL": "R$",
    "JPY": "¥",
    "INR": "₹",
    "AUD": "A$",
    "CAD": "C$",
}


def currency_symbol(currency: Optional[str]) -> str:
    """Symbol for an ISO 4217 code, falling back to the code itself."""
    if not currency:
        return "$"
    code = currency.upper()
    return CURRENCY_SYMBOLS.get(code, f"{code} ")


def fmt_currency(v: Optional[float], symbol: str = "$") -> str:
    """
    Format numeric as currency with 2 decimals and thousands separators.

    Examples:
        >>> fmt_currency(1234.56)
        '$1,234.56'
        >>> fmt_currency(None)
        'N/A'
    """
    if v is None:
        return "N/A"
    return f"{symbol}{v:,.2f}"


def fmt_ratio_x(v: Optional[float]) -> str:
    """Format a ratio as a multiplier: 3 -> '3.00x'."""
    if v is None:
        return "N/A"
    return f"{v:.2f}x"


def fmt_percent(v: Optional[float]) -> str:
    """Format a value that is already a percentage: 1.5 -> '1.50%'."""
    if v is None:
        return "N/A"
    return f"{v:.2f}%"


def fmt_count(v: Optional[float]) -> str:
    """Whole number with thousands separators: 1234 -> '1,234'."""
    if v is None:
        return "N/A"
    return f"{v:,.0f}"


def fmt_decimal_count(v: Optional[float]) -> str:
    """Up to two decimals, trailing zeros dropped: 3.0 -> '3', 2.5 -> '2.5'."""
    if v is None:
        return "N/A"
    text = f"{v:,.2f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_metric_value(metric: str, value: Optional[float], symbol: str = "$") -> str:
    """Route a metric to its formatter; unknown metrics get 2 decimals."""
    m = (metric or "").lower()

    if m in CURRENCY:
        return fmt_currency(value, symbol)
    if m in RATIOS_X:
        return fmt_ratio_x(value)
    if m in PERCENT:
        return fmt_percent(value)
    if m in COUNTS:
        return fmt_count(value)
    if m in DECIMAL_COUNTS:
        return fmt_decimal_count(value)

    if value is None:
        return "N/A"
    return f"{value:.2f}"


def format_metrics_for_display(
    metrics: Union[ExtractedMetrics, Dict[str, float]],
    currency: Optional[str] = "USD",
) -> Dict[str, str]:
    """Format the headline metrics of a record for display.

    Args:
        metrics: ExtractedMetrics or a dict with the same keys (aggregates)
        currency: ISO currency code of the ad account

    Returns:
        Dict keyed by metric name with display strings.
    """
    values = metrics.to_dict() if isinstance(metrics, ExtractedMetrics) else metrics
    symbol = currency_symbol(currency)
    return {
        field: format_metric_value(field, values.get(field, 0) or 0, symbol)
        for field in DISPLAY_FIELDS
    }


def format_delta_pct(delta_pct: Optional[float]) -> str:
    """Signed percentage change; input is already in percent (19.0 -> '+19.0%')."""
    if delta_pct is None:
        return "N/A"
    sign = "+" if delta_pct >= 0 else ""
    return f"{sign}{delta_pct:.1f}%"
