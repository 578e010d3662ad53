"""
Money Helpers

Fixed-point amounts with 2 decimal places. NEVER uses float for monetary
values: every input goes through str() before becoming a Decimal.
"""

from decimal import Decimal, ROUND_HALF_UP, DecimalException, getcontext
from typing import Union

from .errors import InvalidOperation

# High precision for intermediate results (EMI powers), rounded at the boundary
getcontext().prec = 28

TWO_PLACES = Decimal('0.01')
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, int, float, str]


def round_amount(value: Decimal) -> Decimal:
    """Round to 2 decimal places, half up"""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert input to an exact Decimal without rounding

    Raises:
        InvalidOperation: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidOperation(f"Invalid number: {value!r}")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except DecimalException:
        raise InvalidOperation(f"Invalid number: {value!r}")
    if not number.is_finite():
        raise InvalidOperation(f"Invalid number: {value!r}")
    return number


def to_amount(value: AmountLike) -> Decimal:
    """Convert input to a 2 dp Decimal amount"""
    return round_amount(to_decimal(value))


def require_positive(value: AmountLike, what: str = "Amount") -> Decimal:
    """Convert and require amount > 0"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidOperation(f"{what} must be greater than zero, got {amount}")
    return amount


def format_amount(amount: Decimal) -> str:
    """Format for user-facing messages, e.g. $1,234.50"""
    return f"${amount:,.2f}"
