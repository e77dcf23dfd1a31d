"""Display helpers shared by payslip exports, the settlement CLI and lockout messages."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from dateutil import parser as date_parser

DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M"


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value.strip():
        try:
            return date_parser.isoparse(value.strip())
        except ValueError:
            return None
    return None


def format_display_date(value: Any) -> str:
    """``2025-03-01`` for date-like values, blank for ``None``; anything else is echoed back."""
    moment = _as_datetime(value)
    if moment is None:
        return "" if value in (None, "") else str(value)
    return moment.strftime(DATE_FORMAT)


def format_display_datetime(value: Any) -> str:
    moment = _as_datetime(value)
    if moment is None:
        return "" if value in (None, "") else str(value)
    return moment.strftime(DATETIME_FORMAT)


def format_amount(value: Any) -> str:
    """Whole-unit amount with thousand separators, e.g. ``1,234,000``."""

    if value in (None, ""):
        return "0"
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return str(value)
    return f"{amount.quantize(Decimal('1')):,}"


def mask_account_number(value: str | None) -> str:
    """Show only the last four characters of a bank account."""

    if not value:
        return ""
    account = value.strip()
    if len(account) <= 4:
        return account
    return "*" * (len(account) - 4) + account[-4:]


__all__ = [
    "format_amount",
    "format_display_date",
    "format_display_datetime",
    "mask_account_number",
]
