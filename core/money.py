"""
core/money.py — Fixed-point amounts
====================================
All balances are Decimal with two places. Floats never reach the ledger.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from core.errors import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest value a Numeric(18, 2) column holds.
MAX_AMOUNT = Decimal("9999999999999999.99")


def to_money(value, field: str = "amount") -> Decimal:
    """
    Parse a positive amount. Accepts Decimal, int, str, or float (converted
    through str so 0.1 stays 0.1). Raises InvalidAmount otherwise.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(f"{field} is required.", field=field)
    try:
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if not amount.is_finite():
            raise InvalidOperation
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"{field} is not a number.", field=field)
    if amount <= 0:
        raise InvalidAmount(f"{field} must be greater than zero.", field=field)
    if amount > MAX_AMOUNT:
        raise InvalidAmount(f"{field} exceeds the largest supported amount {MAX_AMOUNT}.", field=field)
    try:
        exact = amount == amount.quantize(CENT)
    except InvalidOperation:
        exact = False
    if not exact:
        raise InvalidAmount(f"{field} has more than two decimal places.", field=field)
    return amount.quantize(CENT)


def quantize(value) -> Decimal:
    """Normalize a stored/derived value (which may come back from SQLite as float-ish) to cents."""
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
