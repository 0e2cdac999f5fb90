"""
Money helpers.

Amounts are carried as Decimal end to end. Rounding to currency precision
(2 places, ROUND_HALF_EVEN) happens only where a value is persisted or shown.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Union

CENT = Decimal('0.01')
ZERO = Decimal('0')

Number = Union[int, float, Decimal, str]


def to_decimal(value: Number) -> Decimal:
    """
    Convert a number or numeric string to Decimal.

    Floats go through str() so 0.1 becomes Decimal('0.1') and not its
    binary expansion.

    Raises:
        ValueError: if the value is empty or not numeric.
    """
    if value is None or value == '':
        raise ValueError('Amount is required')
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f'Invalid amount: {value!r}')
    if not result.is_finite():
        raise ValueError(f'Invalid amount: {value!r}')
    return result


def round_money(value: Number) -> Decimal:
    """Round to currency precision using banker's rounding."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


def format_money(value: Number, symbol: str = '$') -> str:
    """
    Format an amount for receipts and logs.

    Examples:
        format_money(21.6) -> "$21.60"
        format_money(Decimal('-1.6')) -> "-$1.60"
        format_money(1234.5) -> "$1,234.50"
    """
    amount = round_money(value)
    sign = '-' if amount < 0 else ''
    return f"{sign}{symbol}{abs(amount):,.2f}"
