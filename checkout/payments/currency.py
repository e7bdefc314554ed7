"""
Money Utilities - Safe Decimal operations for settlement amounts.

Cart totals arrive in USD; the gateway settles in whole MNT. Conversion
happens exactly once, when the session is created.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from checkout.payments.constants import AMOUNT_TOLERANCE

Number = Union[str, int, float, Decimal, None]


def to_decimal(value: Number) -> Decimal:
    """
    Convert any value to Decimal safely.

    Returns Decimal("0") for None or unparseable input.
    """
    if value is None:
        return Decimal("0")

    if isinstance(value, Decimal):
        return value

    try:
        # Go through str so 0.1 stays 0.1
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")


def to_settlement_amount(total_usd: Number, rate: Number) -> int:
    """
    Convert a USD total into whole MNT, rounding half up.

    Example:
        to_settlement_amount("12.50", 3400) -> 42500
    """
    amount = to_decimal(total_usd) * to_decimal(rate)
    return int(amount.to_integral_value(rounding=ROUND_HALF_UP))


def amounts_match(paid: Number, expected: Number) -> bool:
    """True when the paid amount is within one MNT of the expected amount."""
    return abs(to_decimal(paid) - to_decimal(expected)) < AMOUNT_TOLERANCE


def round_money(value: Number) -> Decimal:
    """Round to cents (order line totals)."""
    return to_decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
