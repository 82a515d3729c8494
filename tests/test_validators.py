"""
Tests for validation helpers and split allocation.
"""
from decimal import Decimal

import pytest

from homeledger.exceptions import ValidationError
from homeledger.validators import (
    allocate_by_percentage,
    require_amount,
    require_date,
    validate_amount,
    validate_date_range,
    validate_goal_allocations,
    validate_required_fields,
    validate_splits,
)


def test_validate_amount_rules():
    assert validate_amount(10000) == (True, "")
    assert validate_amount(0, allow_zero=True) == (True, "")
    assert validate_amount(-50) == (False, "Amount cannot be negative")
    assert validate_amount(0) == (False, "Amount cannot be zero")
    assert validate_amount(None)[0] is False
    assert validate_amount(500, max_value=100)[0] is False


def test_require_amount_raises():
    assert require_amount(5) == 5
    with pytest.raises(ValidationError, match="Fee cannot be negative"):
        require_amount(-1, "Fee", allow_zero=True)


def test_validate_required_fields():
    assert validate_required_fields({'name': 'Rent', 'account_id': 1}) == (True, [])
    assert validate_required_fields({'name': '', 'account_id': None}) == (
        False, ['Name is required', 'Account Id is required']
    )


def test_validate_date_range():
    assert validate_date_range('2024-01-01', '2024-12-31') == (True, "")
    assert validate_date_range('2024-12-31', '2024-01-01')[0] is False

@pytest.mark.parametrize("value, expected", [
    ("2024-02-29", "2024-02-29"),
    ("2024-06-01", "2024-06-01"),
])
def test_require_date_accepts_calendar_dates(value, expected):
    assert require_date(value) == expected


@pytest.mark.parametrize("value, message", [
    ("2023-02-29", "must be an ISO date"),
    ("2024-13-01", "must be an ISO date"),
    ("01/06/2024", "must be an ISO date"),
    ("yesterday", "must be an ISO date"),
    ("", "is required"),
    (None, "is required"),
])
def test_require_date_rejects(value, message):
    with pytest.raises(ValidationError, match=f"Due date {message}"):
        require_date(value, "Due date")



class TestAllocateByPercentage:
    def test_parts_sum_exactly(self):
        assert allocate_by_percentage(1000, [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')]) == [333, 333, 334]

    def test_largest_remainder_gets_leftover_cent(self):
        parts = allocate_by_percentage(100, [Decimal(1), Decimal(1), Decimal(1)])
        assert parts == [34, 33, 33]
        assert sum(parts) == 100

    def test_sign_carried(self):
        assert allocate_by_percentage(-100, [Decimal('50'), Decimal('50')]) == [-50, -50]

    def test_rejects_non_positive_total(self):
        with pytest.raises(ValidationError):
            allocate_by_percentage(100, [Decimal(0)])


class TestValidateSplits:
    def test_amount_splits_carry_parent_sign(self):
        splits = validate_splits(
            [{'category_id': 1, 'amount': '30.00'}, {'category_id': 2, 'amount': '70.00'}],
            -10000
        )
        assert [split['amount_cents'] for split in splits] == [-3000, -7000]
        assert [split['sort_order'] for split in splits] == [0, 1]

    def test_amount_splits_must_sum_to_parent(self):
        with pytest.raises(ValidationError, match="total 9999 cents"):
            validate_splits([{'amount': '50.00'}, {'amount': '49.99'}], -10000)

    def test_percentage_splits(self):
        splits = validate_splits(
            [{'percentage': 33.33}, {'percentage': 33.33}, {'percentage': 33.34}],
            1000
        )
        assert [split['amount_cents'] for split in splits] == [333, 333, 334]
        assert splits[0]['percentage'] == pytest.approx(33.33)

    def test_percentages_must_total_100(self):
        with pytest.raises(ValidationError, match="total 100%"):
            validate_splits([{'percentage': 50}, {'percentage': 40}], 1000)

    def test_mixed_styles_rejected(self):
        with pytest.raises(ValidationError, match="Cannot mix"):
            validate_splits([{'amount': '5.00'}, {'percentage': 50}], 1000)

    def test_split_needs_exactly_one_style(self):
        with pytest.raises(ValidationError, match="either an amount or a percentage"):
            validate_splits([{'amount': '5.00', 'percentage': 50}], 500)

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            validate_splits([], 100)


class TestGoalAllocations:
    def test_resolves_to_cents(self):
        resolved = validate_goal_allocations([
            {'savings_goal_id': 1, 'amount': '10.00'},
            {'savings_goal_id': 2, 'amount': Decimal('5.50')},
        ], 2000)
        assert resolved == [
            {'savings_goal_id': 1, 'amount_cents': 1000},
            {'savings_goal_id': 2, 'amount_cents': 550},
        ]

    def test_may_be_less_than_transaction(self):
        assert validate_goal_allocations([{'savings_goal_id': 1, 'amount': '5.00'}], -2000)[0]['amount_cents'] == 500

    @pytest.mark.parametrize("allocations, message", [
        ([], "At least one"),
        ([{'amount': '5.00'}], "needs a savings_goal_id"),
        ([{'savings_goal_id': 1, 'amount': '0'}], "cannot be zero"),
        ([{'savings_goal_id': 1, 'amount': '-5.00'}], "cannot be negative"),
        ([{'savings_goal_id': 1, 'amount': '15.00'}, {'savings_goal_id': 2, 'amount': '6.00'}], "total 2100 cents"),
    ])
    def test_rejects(self, allocations, message):
        with pytest.raises(ValidationError, match=message):
            validate_goal_allocations(allocations, 2000)
