from datetime import date

import pytest

from affiliate_desk.core.formatting import format_amount, format_display_date, mask_account_number
from affiliate_desk.core.periods import format_period, parse_period, period_bounds, period_for, previous_period


def test_parse_and_format_period():
    assert parse_period("2025-03") == (2025, 3)
    assert parse_period(" 2025-12 ") == (2025, 12)
    assert format_period(2025, 3) == "2025-03"
    assert period_for(date(2025, 7, 19)) == "2025-07"

    for bad in ("2025-13", "2025-00", "2025-3", "March", "", None):
        with pytest.raises(ValueError):
            parse_period(bad)


def test_period_bounds_roll_over_the_year():
    assert period_bounds("2025-02") == (date(2025, 2, 1), date(2025, 3, 1))
    assert period_bounds("2024-12") == (date(2024, 12, 1), date(2025, 1, 1))


def test_previous_period():
    assert previous_period(date(2025, 1, 15)) == "2024-12"
    assert previous_period(date(2025, 3, 31)) == "2025-02"


def test_display_helpers():
    assert format_amount("1234567.89") == "1,234,568"
    assert format_amount(None) == "0"
    assert format_display_date(date(2025, 3, 1)) == "2025-03-01"
    assert format_display_date(None) == ""
    assert mask_account_number("110-222-333444") == "**********3444"
    assert mask_account_number("123") == "123"
    assert mask_account_number(None) == ""
