"""
Money Helpers

Decimal precision and rounding rules for every monetary value in the system.
NEVER uses float for monetary values; floats are routed through ``str`` so
binary noise never reaches a Decimal.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a numeric value to Decimal without float artefacts

    Raises:
        ValueError: If the value cannot be represented as a Decimal
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Cannot convert {type(value).__name__} to Decimal")


def round_money(value: Numeric) -> Decimal:
    """Round to 2 fractional digits, half-up on the cent"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling thousands separators
    and currency symbols

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    clean_value = re.sub(r'[^\d.,\-+eE]', '', value.strip())
    # Lakh/crore grouping ("1,00,000.50") and western grouping both use
    # comma as a thousands separator here
    clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    if not result.is_finite():
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return result


def format_amount(value: Numeric, currency_code: str = "INR") -> str:
    """Format for display, e.g. ``INR 1,234.50``"""
    return f"{currency_code} {round_money(value):,.2f}"
