"""
Decimal helpers shared by the pricing, discount and tax engines.
"""
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')


def to_decimal(value) -> Decimal:
    """Coerce int/str/float/Decimal into a Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(value) -> Decimal:
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def is_numeric(value) -> bool:
    """True for int/float/Decimal values; bool does not count."""
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def to_date(value) -> Optional[date]:
    """Normalize a datetime/date/ISO string to a date."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def within_window(as_of: date, start, end) -> bool:
    """Inclusive date window check; None bounds are open-ended."""
    start = to_date(start)
    end = to_date(end)
    if start is not None and as_of < start:
        return False
    if end is not None and as_of > end:
        return False
    return True
