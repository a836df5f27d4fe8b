"""
Money helpers.

All billing arithmetic is done in ``Decimal`` at full precision and rounded
once, at the final step, with banker's rounding (ROUND_HALF_EVEN) to two
decimal places.  Intermediate values are never rounded.
"""

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

from billing_kernel.exceptions import InvalidAmountError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Decimal | int | str) -> Decimal:
    """Coerce ints and strings to Decimal.

    Raises:
        InvalidAmountError: For floats, unparseable values and NaN/Infinity.
    """
    if isinstance(value, float):
        raise InvalidAmountError(value, "monetary values must not be float; pass Decimal or str")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmountError(value, "not a decimal number") from None
    if not result.is_finite():
        raise InvalidAmountError(value, "amount must be finite")
    return result


def round_money(value: Decimal) -> Decimal:
    """Banker's rounding to cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)
