"""
Validation utilities for Home Ledger.

Centralizes validation logic for consistent error handling across the application.
"""
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Tuple, List, Dict, Any, Optional

from homeledger.exceptions import ValidationError
from homeledger.money import to_minor_units

PERCENT_TOLERANCE = Decimal("0.01")


def validate_amount(
    cents: Optional[int],
    field_name: str = "Amount",
    allow_zero: bool = False,
    allow_negative: bool = False,
    min_value: Optional[int] = None,
    max_value: Optional[int] = None
) -> Tuple[bool, str]:
    """
    Validate an amount in cents with configurable rules.

    Args:
        cents: The amount to validate, in cents
        field_name: Name of the field for error messages
        allow_zero: Whether zero is acceptable (default: False)
        allow_negative: Whether negative values are acceptable (default: False)
        min_value: Minimum allowed value in cents (optional)
        max_value: Maximum allowed value in cents (optional)

    Returns:
        Tuple of (is_valid, error_message)

    Examples:
        >>> validate_amount(10000)
        (True, '')

        >>> validate_amount(0, allow_zero=True)
        (True, '')

        >>> validate_amount(-50)
        (False, 'Amount cannot be negative')
    """
    if cents is None:
        return False, f"{field_name} is required"

    if not allow_zero and cents == 0:
        return False, f"{field_name} cannot be zero"

    if not allow_negative and cents < 0:
        return False, f"{field_name} cannot be negative"

    if min_value is not None and cents < min_value:
        return False, f"{field_name} must be at least {min_value} cents"

    if max_value is not None and cents > max_value:
        return False, f"{field_name} cannot exceed {max_value} cents"

    return True, ""


def require_amount(cents: Optional[int], field_name: str = "Amount", **rules) -> int:
    """validate_amount() that raises ValidationError instead of returning a tuple."""
    is_valid, error = validate_amount(cents, field_name, **rules)
    if not is_valid:
        raise ValidationError(error)
    return cents


def validate_required_fields(
    fields: Dict[str, Any],
    field_labels: Optional[Dict[str, str]] = None
) -> Tuple[bool, List[str]]:
    """
    Validate that all required fields have values.

    Examples:
        >>> validate_required_fields({'name': 'Rent', 'account_id': 1})
        (True, [])

        >>> validate_required_fields({'name': '', 'account_id': None})
        (False, ['Name is required', 'Account Id is required'])
    """
    errors = []
    labels = field_labels or {}

    for field_name, value in fields.items():
        label = labels.get(field_name, field_name.replace('_', ' ').title())

        if value is None:
            errors.append(f"{label} is required")
        elif isinstance(value, str) and not value.strip():
            errors.append(f"{label} is required")

    return len(errors) == 0, errors


def validate_date_range(
    start_date: str,
    end_date: str,
    start_label: str = "Start date",
    end_label: str = "End date"
) -> Tuple[bool, str]:
    """
    Validate that start_date is before or equal to end_date.

    Examples:
        >>> validate_date_range('2024-01-01', '2024-12-31')
        (True, '')

        >>> validate_date_range('2024-12-31', '2024-01-01')
        (False, 'Start date must be before or equal to End date')
    """
    if not start_date or not end_date:
        return False, "Both dates are required"

    if start_date > end_date:
        return False, f"{start_label} must be before or equal to {end_label}"
    return True, ""


def require_date(value: Any, field_name: str = "Date") -> str:
    """
    Parse an ISO date and return it in YYYY-MM-DD form.

    Dates are stored as text and compared as strings, so anything that is not
    a real calendar date is rejected here.

    Examples:
        >>> require_date('2024-02-29')
        '2024-02-29'
        >>> require_date('2024-02-30')
        Traceback (most recent call last):
        ...
        homeledger.exceptions.ValidationError: Date must be an ISO date (YYYY-MM-DD): 2024-02-30
    """
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required")
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError as e:
        raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD): {value}") from e


# ==================== SPLITS ====================

def allocate_by_percentage(total_cents: int, percentages: List[Decimal]) -> List[int]:
    """
    Allocate total_cents across percentages so the parts sum exactly.

    Uses the largest remainder method: every share is floored, then the
    leftover cents go one by one to the shares with the biggest fractional
    parts (earlier shares win ties). The sign of total_cents is carried to
    every part.

    Examples:
        >>> allocate_by_percentage(1000, [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')])
        [333, 333, 334]
        >>> allocate_by_percentage(-100, [Decimal('50'), Decimal('50')])
        [-50, -50]
    """
    total_pct = sum(percentages, Decimal(0))
    if total_pct <= 0:
        raise ValidationError("Split percentages must be positive")

    magnitude = abs(total_cents)
    shares = [Decimal(magnitude) * pct / total_pct for pct in percentages]
    floors = [int(share.to_integral_value(rounding=ROUND_FLOOR)) for share in shares]
    leftover = magnitude - sum(floors)

    by_remainder = sorted(range(len(shares)), key=lambda i: (-(shares[i] - floors[i]), i))
    for i in by_remainder[:leftover]:
        floors[i] += 1

    sign = -1 if total_cents < 0 else 1
    return [sign * part for part in floors]


def validate_splits(splits: List[Dict[str, Any]], parent_cents: int) -> List[Dict[str, Any]]:
    """
    Validate split definitions against the parent amount and resolve them to cents.

    Each split gives either an 'amount' (a positive decimal) or a
    'percentage'; mixing the two styles in one transaction is rejected.
    Amount splits must add up to the parent magnitude exactly, percentage
    splits to 100 (within 0.01).

    Args:
        splits: List of dicts with category_id, amount or percentage, description
        parent_cents: Signed amount of the parent transaction

    Returns:
        List of rows ready for transaction_splits, carrying the parent's sign

    Raises:
        ValidationError: If the splits are malformed or do not sum to the parent
    """
    if not splits:
        raise ValidationError("At least one split is required")

    has_amount = [split.get('amount') is not None for split in splits]
    has_percentage = [split.get('percentage') is not None for split in splits]

    for i, (amount_given, pct_given) in enumerate(zip(has_amount, has_percentage)):
        if amount_given == pct_given:
            raise ValidationError(f"Split {i + 1} must have either an amount or a percentage")

    if any(has_amount) and any(has_percentage):
        raise ValidationError("Cannot mix amount and percentage splits")

    sign = -1 if parent_cents < 0 else 1
    magnitude = abs(parent_cents)

    if all(has_amount):
        parts = []
        for i, split in enumerate(splits):
            cents = to_minor_units(split['amount'], f"Split {i + 1} amount")
            require_amount(cents, f"Split {i + 1} amount")
            parts.append(cents)
        if sum(parts) != magnitude:
            raise ValidationError(
                f"Split amounts total {sum(parts)} cents but the transaction is {magnitude} cents"
            )
        signed_parts = [sign * part for part in parts]
        percentages = [None] * len(splits)
    else:
        percentages = []
        for i, split in enumerate(splits):
            try:
                pct = Decimal(str(split['percentage']))
            except InvalidOperation as e:
                raise ValidationError(f"Split {i + 1} percentage is not a number") from e
            if not pct.is_finite() or pct <= 0 or pct > 100:
                raise ValidationError(f"Split {i + 1} percentage must be between 0 and 100")
            percentages.append(pct)
        if abs(sum(percentages, Decimal(0)) - 100) > PERCENT_TOLERANCE:
            raise ValidationError("Split percentages must total 100%")
        signed_parts = allocate_by_percentage(sign * magnitude, percentages)

    return [
        {
            'category_id': split.get('category_id'),
            'amount_cents': cents,
            'percentage': float(pct) if pct is not None else None,
            'description': split.get('description', ''),
            'sort_order': i,
        }
        for i, (split, cents, pct) in enumerate(zip(splits, signed_parts, percentages))
    ]


def validate_goal_allocations(allocations: List[Dict[str, Any]], parent_cents: int) -> List[Dict[str, Any]]:
    """
    Resolve a transaction's contributions to several savings goals.

    Each allocation names a savings_goal_id and a positive amount. A goal may
    appear once, and together the allocations cannot exceed the transaction.

    Returns:
        List of {'savings_goal_id', 'amount_cents'}
    """
    if not allocations:
        raise ValidationError("At least one goal contribution is required")

    resolved = []
    seen = set()
    for i, allocation in enumerate(allocations):
        goal_id = allocation.get('savings_goal_id')
        if goal_id is None:
            raise ValidationError(f"Goal contribution {i + 1} needs a savings_goal_id")
        if goal_id in seen:
            raise ValidationError(f"Savings goal {goal_id} appears more than once")
        seen.add(goal_id)

        label = f"Goal contribution {i + 1} amount"
        resolved.append({
            'savings_goal_id': goal_id,
            'amount_cents': require_amount(to_minor_units(allocation.get('amount'), label), label),
        })

    total = sum(allocation['amount_cents'] for allocation in resolved)
    if total > abs(parent_cents):
        raise ValidationError(
            f"Goal contributions total {total} cents but the transaction is {abs(parent_cents)} cents"
        )
    return resolved
