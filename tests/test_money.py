"""
Tests for money conversion and formatting.
"""
from decimal import Decimal

import pytest

from homeledger.exceptions import ValidationError
from homeledger.money import (
    MAX_AMOUNT_CENTS,
    ensure_cents,
    format_amount,
    money_fields,
    parse_amount,
    to_decimal,
    to_minor_units,
)


@pytest.mark.parametrize("amount, expected", [
    ("12.34", 1234),
    (Decimal("0.01"), 1),
    (10, 1000),
    (-0.5, -50),
    ("  7.10 ", 710),
    (0.1 + 0.2, 30),
])
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


@pytest.mark.parametrize("amount", ["1.005", 0.001, Decimal("3.999")])
def test_to_minor_units_rejects_sub_cent_precision(amount):
    with pytest.raises(ValidationError, match="more than 2 decimal places"):
        to_minor_units(amount)


@pytest.mark.parametrize("amount", [None, True, "abc", float("nan"), float("inf"), [1]])
def test_to_minor_units_rejects_non_numbers(amount):
    with pytest.raises(ValidationError):
        to_minor_units(amount)


@pytest.mark.parametrize("amount", [
    Decimal(MAX_AMOUNT_CENTS + 1) / 100,
    "1e999999999",
    "-1E+400",
    1e308,
])
def test_to_minor_units_rejects_amounts_above_maximum(amount):
    with pytest.raises(ValidationError, match="exceeds the maximum"):
        to_minor_units(amount)


def test_money_fields_derive_real_from_cents():
    assert money_fields(1050, 'amount') == {'amount': 10.5, 'amount_cents': 1050}
    assert money_fields(None, 'credit_limit') == {'credit_limit': None, 'credit_limit_cents': None}


def test_ensure_cents_rejects_floats_and_bools():
    assert ensure_cents(-42) == -42
    with pytest.raises(ValidationError):
        ensure_cents(1.5)
    with pytest.raises(ValidationError):
        ensure_cents(True)


def test_to_decimal_has_two_places():
    assert to_decimal(-1999) == Decimal("-19.99")
    assert str(to_decimal(100)) == "1.00"


@pytest.mark.parametrize("text, expected", [
    ("1 234,56", 123456),
    ("1.234,56", 123456),
    ("1234.56", 123456),
    ("1234,56", 123456),
    ("1\xa0234,50", 123450),
])
def test_parse_amount_european_formats(text, expected):
    assert parse_amount(text) == expected


def test_parse_amount_negative_not_allowed_by_default():
    with pytest.raises(ValidationError, match="cannot be negative"):
        parse_amount("-5,00")
    assert parse_amount("-5,00", allow_negative=True) == -500


def test_parse_amount_invalid():
    with pytest.raises(ValidationError, match="Invalid amount format"):
        parse_amount("twelve")


def test_format_amount():
    assert format_amount(123456) == "1 234,56"
    assert format_amount(123456, include_spaces=False) == "1234,56"
    assert format_amount(5) == "0,05"
