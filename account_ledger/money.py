"""
Monetary Amount Module

Parsing, validation and formatting of monetary amounts. The ledger holds a
single currency, so amounts are plain Decimals constrained to the currency's
minor-unit precision. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation as DecimalException, getcontext
from typing import Optional, Union
import re

from .errors import InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal("0")

AmountLike = Union[Decimal, str, int]


def minor_unit(minor_units: int) -> Decimal:
    """Smallest representable amount, e.g. Decimal('0.01') for two places"""
    return Decimal(1).scaleb(-minor_units)


CURRENCY_SYMBOLS = "$€£¥"

# 1,250.50 style (comma groups of three) or a plain number with "." or "," decimals
_GROUPED_AMOUNT = re.compile(r'^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$')
_PLAIN_AMOUNT = re.compile(r'^[+-]?\d+([.,]\d+)?$')


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert user input to Decimal, handling common formats

    Accepts an optional leading currency symbol, comma thousands separators
    and a comma decimal separator ("12,50"). Anything else is rejected rather
    than guessed at.

    Args:
        value: String representation of an amount, e.g. "$1,250.50"

    Returns:
        Decimal value

    Raises:
        InvalidAmount: If the string is not a well-formed amount
    """
    if not value or not isinstance(value, str):
        raise InvalidAmount("Amount must be a non-empty string")

    clean_value = value.strip()
    if clean_value[:1] in CURRENCY_SYMBOLS:
        clean_value = clean_value[1:].strip()

    if _GROUPED_AMOUNT.match(clean_value):
        clean_value = clean_value.replace(',', '')
    elif _PLAIN_AMOUNT.match(clean_value):
        clean_value = clean_value.replace(',', '.')
    else:
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")

    try:
        return Decimal(clean_value)
    except DecimalException:
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")


def to_decimal(value: AmountLike) -> Decimal:
    """Coerce an amount to Decimal without passing through binary float"""
    if isinstance(value, bool):
        raise InvalidAmount("Amount must be a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # Round-trip through repr so 0.1 becomes Decimal('0.1'), not its binary expansion
        return Decimal(str(value))
    if isinstance(value, str):
        return decimal_from_string(value)
    raise InvalidAmount(f"Unsupported amount type: {type(value).__name__}")


def validate_amount(value: AmountLike, minor_units: int = 2,
                    max_amount: Optional[Decimal] = None) -> Decimal:
    """
    Validate a transaction amount.

    Args:
        value: Amount to validate
        minor_units: Decimal places allowed by the currency
        max_amount: Optional per-transaction ceiling

    Returns:
        The amount quantized to the currency precision

    Raises:
        InvalidAmount: If the amount is not finite, not positive, has excess
            precision or exceeds max_amount
    """
    amount = to_decimal(value)

    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {amount}")
    if amount <= ZERO:
        raise InvalidAmount(f"Amount must be positive, got {amount}")

    try:
        quantized = amount.quantize(minor_unit(minor_units))
    except DecimalException:
        raise InvalidAmount(f"Amount {amount} is too large")
    if quantized != amount:
        raise InvalidAmount(
            f"Amount {amount} has more than {minor_units} decimal places"
        )
    if max_amount is not None and quantized > max_amount:
        raise InvalidAmount(f"Amount {quantized} exceeds the limit of {max_amount}")

    return quantized


def format_amount(amount: Decimal, minor_units: int = 2) -> str:
    """Format for display"""
    return f"{amount:,.{minor_units}f}"
