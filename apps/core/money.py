"""
Decimal helpers. Every stored amount goes through to_money().
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from apps.core.exceptions import InvalidRequestError

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_money(value) -> Decimal:
    """Coerce int/str/Decimal to a 2-place Decimal. Floats go through str() first."""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise InvalidOperation
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidRequestError(f"'{value}' is not a valid amount.")


def from_minor_units(value) -> Decimal:
    """Gateway amounts arrive in the smallest currency unit (cents/paise)."""
    try:
        return to_money(Decimal(int(value)) / 100)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"'{value}' is not a valid minor-unit amount.")


def to_minor_units(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value())


def percentage_of(amount: Decimal, percent) -> Decimal:
    return to_money(to_money(amount) * Decimal(percent) / Decimal('100'))
