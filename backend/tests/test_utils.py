"""
Tests for amount and date helpers
"""
from datetime import date
from decimal import Decimal

import pytest

from membership_fees.core.utils import (add_months, as_date, calculate_age,
                                        percentage_of, to_money,
                                        whole_years_since)


@pytest.mark.parametrize("value, expected", [
    ("2.345", Decimal("2.35")),
    ("2.344", Decimal("2.34")),
    (0.125, Decimal("0.13")),
    (7, Decimal("7.00")),
    (Decimal("-1.005"), Decimal("-1.01")),
])
def test_to_money_rounds_half_up(value, expected):
    assert to_money(value) == expected


@pytest.mark.parametrize("value", ["abc", None, True, float("nan")])
def test_to_money_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        to_money(value)


def test_percentage_of():
    assert percentage_of(Decimal("63.00"), 15) == Decimal("9.45")
    assert percentage_of(Decimal("33.33"), "33.3") == Decimal("11.10")


def test_calculate_age_is_birthday_exact():
    assert calculate_age(date(2008, 9, 1), date(2026, 9, 1)) == 18
    assert calculate_age(date(2008, 9, 2), date(2026, 9, 1)) == 17
    assert calculate_age(None, date(2026, 9, 1)) is None


def test_leap_day_birthday():
    assert calculate_age(date(2008, 2, 29), date(2026, 2, 28)) == 17
    assert calculate_age(date(2008, 2, 29), date(2026, 3, 1)) == 18


def test_whole_years_since():
    assert whole_years_since(date(2020, 1, 1), date(2026, 9, 1)) == 6
    assert whole_years_since(date(2025, 9, 1), date(2026, 9, 1)) == 0
    assert whole_years_since(date(2025, 9, 1), date(2026, 9, 2)) == 1
    assert whole_years_since(None, date(2026, 9, 1)) is None
    assert whole_years_since(date(2027, 9, 1), date(2026, 9, 1)) is None


def test_add_months_clamps_day():
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2026, 9, 1), 12) == date(2027, 9, 1)
    assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)


def test_as_date():
    assert as_date("2026-09-01T10:00:00") == date(2026, 9, 1)
    assert as_date(None) is None
