"""Output formatting utilities for RGAP.

Provides reusable functions for:
- Formatting CAD currency amounts and counts
- Formatting ISO dates and date spans
- Truncating long text for cards and tables

These double as Jinja filters for the server-rendered pages.
"""

import datetime as _dt
from typing import Optional, Union

DateLike = Union[str, _dt.date, _dt.datetime, None]


def format_currency(value: Optional[float]) -> str:
    """Format a CAD amount as whole dollars.

    Examples:
        format_currency(1234567) -> "$1,234,567"
        format_currency(-50.6) -> "-$51"
        format_currency(None) -> "N/A"
    """
    if value is None:
        return "N/A"
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return "N/A"
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.0f}"


def format_amount(value: Optional[float]) -> str:
    """Format a dollar amount compactly for charts and summary cards.

    Examples:
        format_amount(1_340_000) -> "$1.3M"
        format_amount(2_400_000_000) -> "$2.4B"
        format_amount(45_000) -> "$45.0K"
        format_amount(None) -> "-"
    """
    if value is None:
        return "-"
    v = float(value)
    if abs(v) >= 1_000_000_000:
        return f"${v / 1_000_000_000:.1f}B"
    if abs(v) >= 1_000_000:
        return f"${v / 1_000_000:.1f}M"
    if abs(v) >= 1_000:
        return f"${v / 1_000:.1f}K"
    return f"${v:,.0f}"


def format_count(value: Optional[int]) -> str:
    """Format a count with thousands separator ("-" for None)."""
    if value is None:
        return "-"
    return f"{int(value):,d}"


def format_percent(value: Optional[float], precision: int = 1) -> str:
    if value is None:
        return "-"
    return f"{value:.{precision}f}%"


def parse_date(value: DateLike) -> Optional[_dt.date]:
    """Parse an ISO date (or datetime) string into a ``date``.

    Only the leading YYYY-MM-DD part is read, so timestamps parse too.
    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, _dt.datetime):
        return value.date()
    if isinstance(value, _dt.date):
        return value
    try:
        return _dt.date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def format_date(value: DateLike, style: str = "short") -> str:
    """Format a date for display.

    Examples:
        format_date("2023-04-01") -> "2023-04-01"
        format_date("2023-04-01", "long") -> "April 1, 2023"
        format_date(None) -> "N/A"
    """
    if value is None or value == "":
        return "N/A"
    d = parse_date(value)
    if d is None:
        return "Invalid Date"
    if style == "long":
        return f"{d.strftime('%B')} {d.day}, {d.year}"
    return d.isoformat()


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'' if n == 1 else 's'}"


def format_date_diff(start: DateLike, end: DateLike) -> str:
    """Describe the span between two dates in years and months.

    Examples:
        format_date_diff("2020-01-01", "2022-07-01") -> "2 years 6 months"
        format_date_diff("2020-01-01", "2020-02-15") -> "1 month"
        format_date_diff("2020-01-01", None) -> "N/A"
    """
    d1, d2 = parse_date(start), parse_date(end)
    if d1 is None or d2 is None:
        return "N/A"
    months = (d2.year - d1.year) * 12 + (d2.month - d1.month)
    if d2.day < d1.day:
        months -= 1
    months = max(months, 0)
    years, rem = divmod(months, 12)
    if years and rem:
        return f"{_plural(years, 'year')} {_plural(rem, 'month')}"
    if years:
        return _plural(years, "year")
    if rem:
        return _plural(rem, "month")
    return f"{_plural(max((d2 - d1).days, 0), 'day')}"


def truncate_text(text: Optional[str], max_length: int = 100,
                  suffix: str = "...") -> str:
    """Cut *text* to ``max_length`` characters and append ``suffix``.

    Examples:
        truncate_text("Long text here", 4) -> "Long..."
        truncate_text(None) -> ""
    """
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length].rstrip() + suffix
