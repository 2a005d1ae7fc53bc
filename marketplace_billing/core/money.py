"""
Monetary value helpers.

All amounts are Decimal internally. Serialized amounts always carry
exactly four fraction digits (e.g. "96.0000").
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union

ZERO = Decimal("0")
FOUR_PLACES = Decimal("0.0001")

AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert a value to Decimal.

    Floats are rejected so binary rounding never leaks into a ledger.

    Raises:
        TypeError: If value is a float or an unsupported type
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Monetary values must not be {type(value).__name__}: {value!r}")
    if isinstance(value, (int, str)):
        return Decimal(value)
    raise TypeError(f"Unsupported monetary value: {value!r}")


def to_decimal_string(amount: AmountLike) -> str:
    """Serialize an amount with exactly four fraction digits (half-up)."""
    return str(round_money(to_decimal(amount)))


def round_money(amount: Decimal) -> Decimal:
    """Round an amount to four fraction digits (half-up)."""
    return amount.quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)


def from_decimal_string(value: str) -> Decimal:
    """Parse a stored decimal string."""
    return Decimal(value)


def sum_amounts(amounts: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for amount in amounts:
        total += amount
    return total


def format_currency(amount: Decimal, currency: str = "USD") -> str:
    """Format an amount for display, e.g. "USD 1,350.00"."""
    return f"{currency} {amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):,}"
