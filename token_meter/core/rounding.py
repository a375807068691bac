"""
Half-up rounding for reported figures.

Reported money and percentages round half away from zero, the way
dashboards and invoices do, rather than Python's banker's rounding.
"""

from decimal import ROUND_HALF_UP, Decimal


def round_half_up(value: float, places: int = 2) -> float:
    exponent = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(exponent, rounding=ROUND_HALF_UP))


def round_count(value: float) -> int:
    """Round a scaled count to the nearest whole number, halves up."""
    return int(Decimal(repr(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def percentage(part: float, total: float) -> float:
    """Share of ``total`` in percent to one decimal place; 0 for an empty total."""
    if total <= 0:
        return 0.0
    return round_half_up(part / total * 100, 1)
