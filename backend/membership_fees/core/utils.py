"""
Shared helpers for amounts and dates
"""
from datetime import date, datetime
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
DAYS_PER_YEAR = Decimal("365.25")


def to_money(value: Any) -> Decimal:
    """Convert a number to a Decimal rounded half-up to two fraction digits

    Args:
        value: int, float, str or Decimal

    Returns:
        Rounded Decimal

    Raises:
        ValueError: if the value is not numeric
    """
    if isinstance(value, bool):
        raise ValueError(f"Not an amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not an amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not an amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def percentage_of(base: Decimal, rate: Any) -> Decimal:
    """Return rate% of base, rounded to the cent"""
    return to_money(to_money(base) * Decimal(str(rate)) / Decimal(100))


def as_date(value: Any) -> Optional[date]:
    """Normalize a date, datetime or ISO string to a date"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise ValueError(f"Not a date: {value!r}")


def calculate_age(birth_date: Optional[date], reference_date: date) -> Optional[int]:
    """Age in full years at the reference date (birthday-exact)"""
    if birth_date is None:
        return None
    age = reference_date.year - birth_date.year
    if (reference_date.month, reference_date.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def whole_years_since(start: Optional[date], reference_date: date) -> Optional[int]:
    """Whole years elapsed since start, as floor(days / 365.25); None before start"""
    if start is None or start > reference_date:
        return None
    days = (reference_date - start).days
    return int((Decimal(days) / DAYS_PER_YEAR).to_integral_value(rounding=ROUND_FLOOR))


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping the day to the end of the target month"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, _days_in_month(year, month))
    return date(year, month, day)


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    return (date(year, month + 1, 1) - date(year, month, 1)).days
