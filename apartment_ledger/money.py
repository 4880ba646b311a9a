"""
Money helpers.

Amounts cross the engine boundary as decimal strings (or Decimal) with two
fractional digits. Anything that must reconcile to the cent, splitting and
proration in particular, is done on integer cents.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Union

from .exceptions import InvalidStateError, ValidationError


CENT = Decimal('0.01')
ZERO = Decimal('0.00')

AmountLike = Union[str, Decimal, int]


def parse_amount(value: AmountLike, field: str = 'amount', allow_zero: bool = False) -> Decimal:
    """
    Parse a monetary input into a Decimal with two fractional digits.

    Args:
        value: Decimal string, Decimal or int. Floats are rejected.
        field: Field name used in error messages
        allow_zero: Accept 0.00 (negative amounts are always rejected)

    Returns:
        Decimal: Amount quantized to cents

    Raises:
        ValidationError: If the value is not an exact, positive cent amount
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be a decimal string, not {type(value).__name__}")

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} is not a valid amount: {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"{field} is not a valid amount: {value!r}")

    quantized = amount.quantize(CENT)
    if quantized != amount:
        raise ValidationError(f"{field} has more than two fractional digits: {value!r}")

    if quantized < 0 or (quantized == 0 and not allow_zero):
        raise ValidationError(f"{field} must be positive")

    return quantized


def to_decimal(value) -> Decimal:
    """Normalize a value read back from the database to a cent Decimal."""
    if value is None:
        return ZERO
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount) -> int:
    """Convert an amount to integer cents (round half up)."""
    return int((to_decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_amount(amount) -> str:
    return f"{to_decimal(amount):.2f}"


def prorate_cents(total_cents: int, numerator: int, denominator: int) -> int:
    """
    Return total_cents * numerator / denominator rounded half up, exactly.

    Args:
        total_cents: Non-negative amount in cents
        numerator: e.g. occupied days
        denominator: e.g. tenant count * days in month

    Returns:
        int: Prorated cents
    """
    if denominator <= 0:
        raise ValidationError("Proration denominator must be positive")
    if total_cents < 0 or numerator < 0:
        raise ValidationError("Proration inputs must be non-negative")
    return (2 * total_cents * numerator + denominator) // (2 * denominator)


def split_cents(total_cents: int, count: int) -> List[int]:
    """
    Split total_cents into count shares that sum to total_cents exactly.

    Every share gets the floor of the even split; the first `remainder`
    shares absorb one extra cent each.

    Example:
        split_cents(10000, 3) -> [3334, 3333, 3333]
    """
    if count <= 0:
        raise InvalidStateError("Cannot split an amount among zero apartments")
    if total_cents < 0:
        raise ValidationError("Cannot split a negative amount")

    base_cents = total_cents // count
    remainder = total_cents - base_cents * count
    return [base_cents + (1 if i < remainder else 0) for i in range(count)]
