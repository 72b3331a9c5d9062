"""
Money Helpers Module

Decimal parsing and rounding for every monetary value in the ledger.
NEVER uses float for monetary values; amounts are rounded to cents with
ROUND_HALF_UP and stored as strings.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Iterable

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

PRECISION = 2
CENT = Decimal('0.1') ** PRECISION
ZERO = Decimal('0.00')
# Largest accepted magnitude; keeps interest and totals well inside prec=28
MAX_AMOUNT = Decimal('1000000000000')


def quantize(amount: Decimal) -> Decimal:
    """Round to currency precision"""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    Convert a raw value to a rounded Decimal.

    Floats are converted through their string form so 0.1 stays 0.1.

    Raises:
        ValidationError: if the value is missing, not numeric, not finite,
            or larger in magnitude than MAX_AMOUNT
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number, got {value!r}")
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}, got {value!r}")
    try:
        return quantize(amount)
    except InvalidOperation:
        raise ValidationError(f"{field} cannot be rounded to cents, got {value!r}")


def to_positive_decimal(value: Any, field: str = "amount") -> Decimal:
    """Convert and require a value strictly greater than zero"""
    amount = to_decimal(value, field)
    if amount <= ZERO:
        raise ValidationError(f"{field} must be positive, got {amount}")
    return amount


def to_non_negative_decimal(value: Any, field: str = "amount") -> Decimal:
    """Convert and require a value of zero or more"""
    amount = to_decimal(value, field)
    if amount < ZERO:
        raise ValidationError(f"{field} cannot be negative, got {amount}")
    return amount


def total(amounts: Iterable[Decimal]) -> Decimal:
    return quantize(sum(amounts, ZERO))


def format_amount(amount: Decimal, currency_code: str = "PHP") -> str:
    """Format for display"""
    return f"{currency_code} {amount:,.{PRECISION}f}"
