"""Settlement period helpers. A period is a calendar month written ``YYYY-MM``."""
from __future__ import annotations

import re
from datetime import date

from dateutil.relativedelta import relativedelta

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def parse_period(value: str) -> tuple[int, int]:
    """Parse ``YYYY-MM`` into ``(year, month)``."""

    match = _PERIOD_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"Period must be formatted as YYYY-MM, got {value!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Month out of range in period {value!r}")
    return year, month


def format_period(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def period_bounds(period: str) -> tuple[date, date]:
    """Return the first day of the period and the first day of the next one."""

    year, month = parse_period(period)
    start = date(year, month, 1)
    return start, start + relativedelta(months=1)


def period_for(day: date) -> str:
    return format_period(day.year, day.month)


def previous_period(today: date | None = None) -> str:
    """The month before ``today``, the default target of a settlement run."""

    anchor = (today or date.today()).replace(day=1) - relativedelta(months=1)
    return format_period(anchor.year, anchor.month)


__all__ = [
    "format_period",
    "parse_period",
    "period_bounds",
    "period_for",
    "previous_period",
]
