"""
DECIMAL PRECISION & MONEY UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe money arithmetic (no float drift)
3. Value validation (finite, non-negative, positive)
4. Minor-unit conversion for the payment gateway

All arithmetic happens on Decimal; values are rounded and converted back to
float only at the storage boundary.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Iterable, Union
import logging

from .errors import ValidationError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

# Tolerance for comparing caller-supplied totals (1 cent)
TOLERANCE = Decimal('0.01')

Numeric = Union[float, int, str, Decimal]


class FinancialPrecisionError(ValidationError):
    """Raised when a value cannot be interpreted as a finite amount"""
    pass


class NegativeValueError(ValidationError):
    """Raised when a financial value is out of its permitted range"""
    pass


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, bool) or value is None:
        raise FinancialPrecisionError(f"'{field_name}' must be a number", field=field_name)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"'{field_name}' must be a number", field=field_name)
    else:
        raise FinancialPrecisionError(f"Cannot convert {type(value).__name__} to a number", field=field_name)

    if not result.is_finite():
        raise FinancialPrecisionError(f"'{field_name}' must be a finite number", field=field_name)
    return result


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_non_negative(value: Any, field_name: str) -> Decimal:
    """Validate that a financial value is >= 0 and return it as Decimal."""
    decimal_value = to_decimal(value, field_name)
    if decimal_value < Decimal('0'):
        raise NegativeValueError(f"'{field_name}' must be 0 or greater", field=field_name)
    return decimal_value


def validate_positive(value: Any, field_name: str) -> Decimal:
    """Validate that a financial value is strictly positive (> 0) and return it."""
    decimal_value = to_decimal(value, field_name)
    if decimal_value <= Decimal('0'):
        raise NegativeValueError(f"'{field_name}' must be greater than 0", field=field_name)
    return decimal_value


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    return to_decimal(a) - to_decimal(b)


def safe_multiply(a: Numeric, b: Numeric) -> Decimal:
    return to_decimal(a) * to_decimal(b)


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(10000, 50) = 5000
    """
    return to_decimal(amount) * to_decimal(percentage) / Decimal('100')


def sum_amounts(values: Iterable[Numeric]) -> Decimal:
    """Sum stored amounts, treating missing values as zero."""
    return safe_add(*[v for v in values if v is not None])


def amounts_match(a: Numeric, b: Numeric) -> bool:
    """True when two amounts agree within one cent."""
    return abs(to_decimal(a) - to_decimal(b)) <= TOLERANCE


def from_minor_units(value: Any) -> Decimal:
    """Convert gateway minor units (cents) to a rounded major-unit Decimal."""
    if value is None:
        return Decimal('0.00')
    return round_financial(to_decimal(value, "minor_units") / Decimal('100'))


def to_minor_units(value: Numeric) -> int:
    """Convert a major-unit amount to integer minor units for the gateway."""
    return int((round_financial(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))
