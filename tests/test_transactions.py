"""
Tests for income and expense transactions and their splits.
"""
import pytest

from homeledger.exceptions import NotFoundError, ValidationError
from homeledger.transactions import TransactionService

from conftest import HOUSEHOLD, OTHER_HOUSEHOLD, balance


@pytest.fixture
def service(db):
    return TransactionService(db)


@pytest.fixture
def checking(make_account):
    return make_account(opening_balance=1000)


def expense(account_id, amount="25.00", **extra):
    return {
        'account_id': account_id,
        'transaction_date': '2024-05-10',
        'transaction_type': 'expense',
        'amount': amount,
        'description': 'Groceries',
        **extra,
    }


def test_expense_is_stored_negative(db, service, checking):
    transaction_id = service.create_transaction(HOUSEHOLD, expense(checking))
    transaction = db.get_transaction(HOUSEHOLD, transaction_id)
    assert transaction['amount_cents'] == -2500
    assert transaction['amount'] == pytest.approx(-25.0)
    assert balance(db, checking) == 97500


def test_income_is_stored_positive(db, service, checking):
    service.create_transaction(HOUSEHOLD, {**expense(checking), 'transaction_type': 'income', 'amount': 12})
    assert balance(db, checking) == 101200


@pytest.mark.parametrize("amount", ["0", "-5.00", "1.005"])
def test_rejects_bad_amounts(db, service, checking, amount):
    with pytest.raises(ValidationError):
        service.create_transaction(HOUSEHOLD, expense(checking, amount=amount))
    assert balance(db, checking) == 100000


def test_rejects_transfer_types(service, checking):
    with pytest.raises(ValidationError, match="transfer"):
        service.create_transaction(HOUSEHOLD, {**expense(checking), 'transaction_type': 'transfer_out'})


def test_rejects_inactive_account(db, service, checking):
    db.deactivate_account(HOUSEHOLD, checking)
    with pytest.raises(ValidationError, match="inactive"):
        service.create_transaction(HOUSEHOLD, expense(checking))


def test_rejects_foreign_account(service, make_account):
    foreign = make_account(household_id=OTHER_HOUSEHOLD)
    with pytest.raises(ValidationError, match="does not exist"):
        service.create_transaction(HOUSEHOLD, expense(foreign))


def test_rejects_unknown_link_and_writes_nothing(db, service, checking):
    with pytest.raises(ValidationError, match="Debt 999"):
        service.create_transaction(HOUSEHOLD, expense(checking, debt_id=999))
    assert db.get_transactions(HOUSEHOLD) == []
    assert balance(db, checking) == 100000


def test_update_amount_moves_balance_by_difference(db, service, checking):
    transaction_id = service.create_transaction(HOUSEHOLD, expense(checking, amount="40.00"))
    updated = service.update_transaction(HOUSEHOLD, transaction_id, {'amount': '55.50'})
    assert updated['amount_cents'] == -5550
    assert balance(db, checking) == 100000 - 5550


def test_update_type_flips_sign(db, service, checking):
    transaction_id = service.create_transaction(HOUSEHOLD, expense(checking, amount="10.00"))
    service.update_transaction(HOUSEHOLD, transaction_id, {'transaction_type': 'income'})
    assert balance(db, checking) == 101000


def test_update_account_moves_effect(db, service, checking, make_account):
    savings = make_account(name="Savings")
    transaction_id = service.create_transaction(HOUSEHOLD, expense(checking, amount="10.00"))
    service.update_transaction(HOUSEHOLD, transaction_id, {'account_id': savings})
    assert balance(db, checking) == 100000
    assert balance(db, savings) == -1000


def test_update_rejects_unknown_columns(service, checking):
    transaction_id = service.create_transaction(HOUSEHOLD, expense(checking))
    with pytest.raises(ValidationError, match="Invalid columns"):
        service.update_transaction(HOUSEHOLD, transaction_id, {'amount_cents': 1})


@pytest.mark.parametrize("transaction_date", ["2024-02-30", "10/05/2024", "soon"])
def test_rejects_invalid_transaction_date(db, service, checking, transaction_date):
    with pytest.raises(ValidationError, match="Transaction date must be an ISO date"):
        service.create_transaction(HOUSEHOLD, expense(checking, transaction_date=transaction_date))
    assert balance(db, checking) == 100000

    transaction_id = service.create_transaction(HOUSEHOLD, expense(checking))
    with pytest.raises(ValidationError, match="Transaction date must be an ISO date"):
        service.update_transaction(HOUSEHOLD, transaction_id, {'transaction_date': transaction_date})
    assert db.get_transaction(HOUSEHOLD, transaction_id)['transaction_date'] == '2024-05-10'


def test_delete_reverses_balance(db, service, checking):
    transaction_id = service.create_transaction(HOUSEHOLD, expense(checking))
    result = service.delete_transaction(HOUSEHOLD, transaction_id)
    assert result == {'deleted_transaction_ids': [transaction_id]}
    assert balance(db, checking) == 100000
    assert db.get_transaction(HOUSEHOLD, transaction_id) is None


def test_delete_other_household_not_found(db, service, checking):
    transaction_id = service.create_transaction(HOUSEHOLD, expense(checking))
    with pytest.raises(NotFoundError):
        service.delete_transaction(OTHER_HOUSEHOLD, transaction_id)
    assert balance(db, checking) == 97500


class TestSplits:
    def test_create_with_percentage_splits(self, db, service, checking):
        food = db.add_category(HOUSEHOLD, "Food")
        home = db.add_category(HOUSEHOLD, "Home")
        transaction_id = service.create_transaction(HOUSEHOLD, expense(checking, amount="10.00", splits=[
            {'category_id': food, 'percentage': 33.33},
            {'category_id': home, 'percentage': 66.67},
        ]))

        transaction = db.get_transaction(HOUSEHOLD, transaction_id)
        assert transaction['is_split']
        amounts = [split['amount_cents'] for split in transaction['splits']]
        assert amounts == [-333, -667]
        assert sum(amounts) == transaction['amount_cents']

    def test_bad_splits_write_nothing(self, db, service, checking):
        with pytest.raises(ValidationError):
            service.create_transaction(HOUSEHOLD, expense(checking, amount="10.00", splits=[
                {'amount': '4.00'}, {'amount': '5.00'},
            ]))
        assert db.get_transactions(HOUSEHOLD) == []

    def test_amount_change_needs_new_splits(self, service, checking):
        transaction_id = service.create_transaction(HOUSEHOLD, expense(checking, amount="10.00", splits=[
            {'amount': '4.00'}, {'amount': '6.00'},
        ]))
        with pytest.raises(ValidationError, match="provide the new splits"):
            service.update_transaction(HOUSEHOLD, transaction_id, {'amount': '12.00'})

        updated = service.update_transaction(HOUSEHOLD, transaction_id, {
            'amount': '12.00',
            'splits': [{'amount': '6.00'}, {'amount': '6.00'}],
        })
        assert [split['amount_cents'] for split in updated['splits']] == [-600, -600]

    def test_replace_splits_and_clear(self, db, service, checking):
        transaction_id = service.create_transaction(HOUSEHOLD, expense(checking, amount="9.00"))
        splits = service.replace_splits(HOUSEHOLD, transaction_id, [{'amount': '3.00'}, {'amount': '6.00'}])
        assert [split['amount_cents'] for split in splits] == [-300, -600]
        assert db.get_transaction(HOUSEHOLD, transaction_id)['is_split']

        assert service.replace_splits(HOUSEHOLD, transaction_id, []) == []
        assert not db.get_transaction(HOUSEHOLD, transaction_id)['is_split']

    def test_category_in_use_cannot_be_deleted(self, db, service, checking):
        food = db.add_category(HOUSEHOLD, "Food")
        service.create_transaction(HOUSEHOLD, expense(checking, category_id=food))
        with pytest.raises(ValidationError, match="still reference it"):
            db.delete_category(HOUSEHOLD, food)
