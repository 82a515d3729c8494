"""
Home Ledger - Money helpers

Amounts are stored as signed integer cents. The REAL column kept beside each
cents column is always derived from the integer with to_float(), never
written on its own.
"""
import os
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union

from homeledger.exceptions import ValidationError

INT64_MAX = 2 ** 63 - 1

# 999,999,999.99 unless configured lower/higher; never past int64
MAX_AMOUNT_CENTS = min(int(os.getenv("LEDGER_MAX_AMOUNT_CENTS", "99999999999")), INT64_MAX)
MAX_AMOUNT_DIGITS = len(str(INT64_MAX))

CENT = Decimal("0.01")
FLOAT_NOISE = Decimal("0.000000001")

AmountInput = Union[Decimal, int, float, str]


def _as_decimal(amount: Any, field_name: str) -> Decimal:
    if amount is None:
        raise ValidationError(f"{field_name} is required")
    if isinstance(amount, bool):
        raise ValidationError(f"{field_name} must be a number")

    try:
        if isinstance(amount, Decimal):
            value = amount
        elif isinstance(amount, int):
            value = Decimal(amount)
        elif isinstance(amount, float):
            value = Decimal(repr(amount))
        elif isinstance(amount, str):
            value = Decimal(amount.strip())
        else:
            raise ValidationError(f"{field_name} must be a number")
    except InvalidOperation as e:
        raise ValidationError(f"Invalid {field_name.lower()}: '{amount}'") from e

    if not value.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    # Exponent check first: scaling 1e999999999 would overflow the context
    if value.adjusted() > MAX_AMOUNT_DIGITS or abs(value) * 100 > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field_name} exceeds the maximum of {format_amount(MAX_AMOUNT_CENTS)}")

    if isinstance(amount, float):
        # 0.1 + 0.2 arrives as 0.30000000000000004
        value = value.quantize(FLOAT_NOISE, rounding=ROUND_HALF_UP)
    return value


def to_minor_units(amount: AmountInput, field_name: str = "Amount") -> int:
    """
    Convert a decimal amount to signed integer cents.

    Rounds half away from zero and rejects anything that would need more than
    two fractional digits, so ambiguous inputs fail instead of being silently
    rounded.

    Args:
        amount: Decimal, int, float or numeric string
        field_name: Name of the field for error messages

    Returns:
        Amount in cents

    Raises:
        ValidationError: If the amount is missing, malformed, too precise or
            above MAX_AMOUNT_CENTS

    Examples:
        >>> to_minor_units("12.34")
        1234
        >>> to_minor_units(-0.5)
        -50
        >>> to_minor_units("1.005")
        Traceback (most recent call last):
        ...
        homeledger.exceptions.ValidationError: Amount has more than 2 decimal places: 1.005
    """
    value = _as_decimal(amount, field_name)
    rounded = value.quantize(CENT, rounding=ROUND_HALF_UP)
    if rounded != value:
        raise ValidationError(f"{field_name} has more than 2 decimal places: {amount}")
    return int(rounded * 100)


def to_decimal(cents: int) -> Decimal:
    """Cents to a 2-place Decimal. Display and serialization only."""
    return (Decimal(ensure_cents(cents)) / 100).quantize(CENT)


def to_float(cents: Optional[int]) -> Optional[float]:
    """The REAL value persisted next to a cents column."""
    if cents is None:
        return None
    return ensure_cents(cents) / 100


def money_fields(cents: Optional[int], column: str) -> Dict[str, Any]:
    """
    Build the {column, column_cents} pair for an INSERT or UPDATE.

    Examples:
        >>> money_fields(1050, 'amount')
        {'amount': 10.5, 'amount_cents': 1050}
    """
    return {column: to_float(cents), f"{column}_cents": cents}


def ensure_cents(value: Any, field_name: str = "Amount", limit: int = INT64_MAX) -> int:
    """Check that value is already an integer cent count within limit."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer number of cents")
    if abs(value) > limit:
        raise ValidationError(f"{field_name} is out of range: {value}")
    return value


def parse_amount(amount_str: str, allow_negative: bool = False) -> int:
    """
    Parse a European-formatted amount string to cents.

    Examples:
        "1 234,56" -> 123456
        "1.234,56" -> 123456
        "1234.56" -> 123456
        "1234,56" -> 123456

    Raises:
        ValidationError: If the amount is invalid or negative when not allowed
    """
    if not amount_str or not isinstance(amount_str, str):
        raise ValidationError("Amount is required and must be a string")

    cleaned = amount_str.strip()
    cleaned = cleaned.replace(" ", "").replace("\xa0", "")
    if "," in cleaned:
        # dots are thousand separators when a decimal comma is present
        cleaned = cleaned.replace(".", "").replace(",", ".")

    try:
        cents = to_minor_units(cleaned)
    except ValidationError as e:
        raise ValidationError(f"Invalid amount format: '{amount_str}'. Please use format like '1 234,56'") from e

    if not allow_negative and cents < 0:
        raise ValidationError("Amount cannot be negative")
    return cents


def format_amount(cents: int, include_spaces: bool = True) -> str:
    """
    Format cents for display.

    Examples:
        123456 -> "1 234,56"
        123456 (no spaces) -> "1234,56"
    """
    value = to_decimal(cents)
    if include_spaces:
        return f"{value:,.2f}".replace(",", " ").replace(".", ",")
    return f"{value:.2f}".replace(".", ",")
