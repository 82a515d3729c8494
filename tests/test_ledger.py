"""
Tests for account balances: atomic deltas, available credit and repairs.
"""
import sqlite3
import threading
from contextlib import contextmanager

import pytest

from homeledger import database
from homeledger.exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from homeledger.ledger import AccountLedger, available_credit_cents
from homeledger.transactions import TransactionService

from conftest import HOUSEHOLD, OTHER_HOUSEHOLD, balance


def test_opening_balance_seeds_balance(db, make_account):
    account_id = make_account(opening_balance="250.75")
    account = db.get_account(HOUSEHOLD, account_id)
    assert account['opening_balance_cents'] == 25075
    assert account['balance_cents'] == 25075
    assert account['balance'] == pytest.approx(250.75)


def test_apply_and_reverse_delta(db, make_account):
    ledger = AccountLedger(db)
    account_id = make_account(opening_balance=100)

    assert ledger.apply_delta(HOUSEHOLD, account_id, -2550) == 7450
    account = db.get_account(HOUSEHOLD, account_id)
    assert account['balance'] == pytest.approx(74.50)

    assert ledger.reverse_delta(HOUSEHOLD, account_id, -2550) == 10000
    assert balance(db, account_id) == 10000


def test_delta_must_be_integer_cents(db, make_account):
    account_id = make_account()
    with pytest.raises(ValidationError):
        AccountLedger(db).apply_delta(HOUSEHOLD, account_id, 1.5)


def test_delta_on_foreign_account_not_found(db, make_account):
    account_id = make_account(household_id=OTHER_HOUSEHOLD)
    with pytest.raises(NotFoundError):
        AccountLedger(db).apply_delta(HOUSEHOLD, account_id, 100)


def test_concurrent_deltas_are_not_lost(db, make_account):
    """Two writers on the same account: both deltas land."""
    ledger = AccountLedger(db)
    account_id = make_account()
    errors = []

    def worker(delta):
        try:
            for _ in range(10):
                ledger.apply_delta(HOUSEHOLD, account_id, delta)
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(500,)), threading.Thread(target=worker, args=(-200,))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert balance(db, account_id) == 10 * 500 - 10 * 200


@contextmanager
def held_write_lock(db_path):
    """Hold the write lock from a second connection for the duration of the block."""
    holder = sqlite3.connect(db_path, isolation_level=None)
    holder.execute("BEGIN IMMEDIATE")
    try:
        yield holder
    finally:
        if holder.in_transaction:
            holder.execute("ROLLBACK")
        holder.close()


@pytest.fixture
def fast_retries(db, monkeypatch):
    """Short busy timeout and no backoff; returns the list of connection attempts."""
    monkeypatch.setattr(database, 'DB_TIMEOUT', 0.05)
    monkeypatch.setattr(database, 'RETRY_BACKOFF_SECONDS', 0)
    monkeypatch.setattr(database, 'MAX_RETRIES', 3)

    attempts = []
    connect = db._get_connection

    def counting_connect():
        attempts.append(len(attempts) + 1)
        return connect()

    monkeypatch.setattr(db, '_get_connection', counting_connect)
    return attempts


def test_contended_write_retries_then_conflicts(db, make_account, fast_retries, caplog):
    account_id = make_account(opening_balance=10)
    fast_retries.clear()

    with held_write_lock(db.db_path):
        with pytest.raises(ConcurrencyConflict):
            AccountLedger(db).apply_delta(HOUSEHOLD, account_id, 500)

    assert fast_retries == [1, 2, 3]
    assert "gave up after 3 attempts" in caplog.text
    assert balance(db, account_id) == 1000


def test_write_succeeds_once_lock_is_released(db, make_account, fast_retries, monkeypatch):
    account_id = make_account(opening_balance=10)
    ledger = AccountLedger(db)
    counting_connect = db._get_connection

    with held_write_lock(db.db_path) as holder:
        fast_retries.clear()

        def release_on_second_attempt():
            conn = counting_connect()
            if len(fast_retries) == 2:
                holder.execute("ROLLBACK")
            return conn

        monkeypatch.setattr(db, '_get_connection', release_on_second_attempt)
        assert ledger.apply_delta(HOUSEHOLD, account_id, 500) == 1500

    assert fast_retries == [1, 2]
    assert balance(db, account_id) == 1500


def test_reads_are_not_blocked_by_a_writer(db, make_account, fast_retries):
    account_id = make_account(opening_balance=10)
    with held_write_lock(db.db_path):
        assert AccountLedger(db).get_balance(HOUSEHOLD, account_id)['balance_cents'] == 1000


def test_available_credit(db, make_account):
    card_id = make_account(name="Card", account_type="credit", credit_limit=1000)
    TransactionService(db).create_transaction(HOUSEHOLD, {
        'account_id': card_id,
        'transaction_date': '2024-03-01',
        'transaction_type': 'expense',
        'amount': '250.00',
    })

    result = AccountLedger(db).get_balance(HOUSEHOLD, card_id)
    assert result['balance_cents'] == -25000
    assert result['available_credit_cents'] == 75000


def test_available_credit_only_for_credit_accounts(db, make_account):
    checking_id = make_account(opening_balance=50)
    assert available_credit_cents(db.get_account(HOUSEHOLD, checking_id)) is None


def test_positive_credit_balance_does_not_raise_available_credit(db, make_account):
    card_id = make_account(name="Card", account_type="credit", credit_limit=1000, opening_balance=20)
    assert available_credit_cents(db.get_account(HOUSEHOLD, card_id)) == 100000


def test_verify_and_recalculate_balances(db, make_account):
    ledger = AccountLedger(db)
    account_id = make_account(opening_balance=100)
    TransactionService(db).create_transaction(HOUSEHOLD, {
        'account_id': account_id,
        'transaction_date': '2024-03-01',
        'transaction_type': 'income',
        'amount': 40,
    })
    assert ledger.verify_balances(HOUSEHOLD) == []

    with db.db_connection() as conn:
        conn.execute("UPDATE accounts SET balance_cents = 1, balance = 0.01 WHERE id = ?", (account_id,))

    drifted = ledger.verify_balances(HOUSEHOLD)
    assert len(drifted) == 1
    assert drifted[0]['expected_cents'] == 14000

    dry = ledger.recalculate_balances(HOUSEHOLD, actor="tester", dry_run=True)
    assert dry['accounts_updated'] == 0
    assert balance(db, account_id) == 1

    result = ledger.recalculate_balances(HOUSEHOLD, actor="tester")
    assert result['accounts_updated'] == 1
    assert balance(db, account_id) == 14000

    log = db.get_repair_log(HOUSEHOLD)
    assert log[0]['action'] == 'recalculate_balance'
    assert log[0]['actor'] == 'tester'
