"""
Monetary Amount Helpers

The ledger is single-currency. Amounts are Decimal values with two decimal
places. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

PRECISION = 2
QUANTUM = Decimal('0.1') ** PRECISION
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, int, str]


def to_amount(value: AmountLike, field_name: str = "amount") -> Decimal:
    """
    Convert input to a two-place Decimal amount.

    Floats are refused because they cannot represent most cent values
    exactly. Values with more than two decimal places are refused rather
    than silently rounded.

    Raises:
        ValidationError: If the value is not a finite amount with at most two decimals
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field_name} must be a Decimal, int or str, not {type(value).__name__}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} is not a valid amount: {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite")

    try:
        rounded = amount.quantize(QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"{field_name} is out of range: {value!r}")
    if rounded != amount:
        raise ValidationError(f"{field_name} has more than {PRECISION} decimal places: {amount}")
    return rounded


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{amount:,.{PRECISION}f}"
