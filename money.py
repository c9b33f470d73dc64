from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import InvalidInputError

CENT = Decimal("0.01")


def to_cents(amount: Union[Decimal, int, str]) -> int:
    """Convert a decimal amount to integer minor units without a float round-trip."""
    if isinstance(amount, float):
        raise InvalidInputError("Amounts must be given as decimals, not floats")
    try:
        value = Decimal(amount) if not isinstance(amount, Decimal) else amount
    except InvalidOperation as exc:
        raise InvalidInputError("Invalid amount") from exc
    if not value.is_finite():
        raise InvalidInputError("Invalid amount")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)

