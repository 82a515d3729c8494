"""
Tests for the read-only consistency verifier and the explicit repairs.
"""
import pytest

from homeledger.exceptions import ConsistencyViolation
from homeledger.transactions import TransactionService
from homeledger.transfers import TransferService
from homeledger import verifier as verifier_module
from homeledger.verifier import ConsistencyVerifier, Violation

from conftest import HOUSEHOLD, OTHER_HOUSEHOLD


@pytest.fixture
def verifier(db):
    return ConsistencyVerifier(db)


@pytest.fixture
def transfer(db, make_account):
    checking = make_account(name="Checking", opening_balance=500)
    savings = make_account(name="Savings")
    return TransferService(db).create_transfer(HOUSEHOLD, {
        'from_account_id': checking,
        'to_account_id': savings,
        'amount': '75.00',
        'fee': '0.50',
        'transfer_date': '2024-08-01',
    })


def test_clean_household_has_no_violations(verifier, transfer):
    assert verifier.verify(HOUSEHOLD) == []
    verifier.assert_consistent(HOUSEHOLD)


def test_deleted_leg_reported_once_naming_survivor(db, verifier, transfer):
    with db.db_connection() as conn:
        conn.execute("DELETE FROM transactions WHERE id = ?", (transfer['to_transaction_id'],))

    violations = verifier.verify(HOUSEHOLD)
    assert len(violations) == 1
    violation = violations[0]
    assert violation.kind == 'orphaned_transfer_leg'
    assert violation.table == 'transactions'
    assert violation.row_id == transfer['from_transaction_id']


def test_verify_does_not_write(db, verifier, transfer):
    with db.db_connection() as conn:
        conn.execute("DELETE FROM transactions WHERE id = ?", (transfer['to_transaction_id'],))
    before = db.get_transactions(HOUSEHOLD)

    verifier.verify(HOUSEHOLD)
    assert db.get_transactions(HOUSEHOLD) == before
    assert db.get_repair_log(HOUSEHOLD) == []


def test_both_legs_missing(db, verifier, transfer):
    with db.db_connection() as conn:
        conn.execute("DELETE FROM transactions")

    assert [v.kind for v in verifier.verify(HOUSEHOLD)] == ['transfer_missing_legs']


def test_leg_without_transfer_record(db, verifier, transfer):
    with db.db_connection() as conn:
        conn.execute("DELETE FROM transfers")

    kinds = [v.kind for v in verifier.verify(HOUSEHOLD)]
    assert kinds == ['orphaned_transfer_leg', 'orphaned_transfer_leg']


def test_amount_mismatch(db, verifier, transfer):
    with db.db_connection() as conn:
        conn.execute(
            "UPDATE transactions SET amount_cents = 7000, amount = 70.0 WHERE id = ?",
            (transfer['to_transaction_id'],)
        )

    assert [v.kind for v in verifier.verify(HOUSEHOLD)] == ['transfer_amount_mismatch']


def test_sign_violation(db, verifier, transfer):
    with db.db_connection() as conn:
        conn.execute(
            "UPDATE transactions SET amount_cents = 7550, amount = 75.5 WHERE id = ?",
            (transfer['from_transaction_id'],)
        )

    kinds = {v.kind for v in verifier.verify(HOUSEHOLD)}
    assert 'transfer_sign' in kinds


def test_split_sum_mismatch(db, verifier, make_account):
    account_id = make_account(opening_balance=100)
    transaction_id = TransactionService(db).create_transaction(HOUSEHOLD, {
        'account_id': account_id,
        'transaction_date': '2024-08-01',
        'transaction_type': 'expense',
        'amount': '10.00',
        'splits': [{'amount': '4.00'}, {'amount': '6.00'}],
    })
    with db.db_connection() as conn:
        conn.execute(
            "UPDATE transaction_splits SET amount_cents = -500, amount = -5.0 "
            "WHERE transaction_id = ? AND sort_order = 0",
            (transaction_id,)
        )

    violations = verifier.verify(HOUSEHOLD)
    assert violations == [Violation('transactions', transaction_id, 'split_sum_mismatch',
                                    "splits total -1100 but amount is -1000")]


def test_money_drift_detected_and_repaired(db, verifier, make_account):
    account_id = make_account(opening_balance="12.34")
    with db.db_connection() as conn:
        conn.execute("UPDATE accounts SET balance = 12.3 WHERE id = ?", (account_id,))

    violations = verifier.verify(HOUSEHOLD)
    assert [(v.table, v.row_id, v.kind) for v in violations] == [('accounts', account_id, 'money_drift')]
    with pytest.raises(ConsistencyViolation) as excinfo:
        verifier.assert_consistent(HOUSEHOLD)
    assert len(excinfo.value.violations) == 1

    assert verifier.repair_money_drift(HOUSEHOLD, actor="tester") == 1
    assert db.get_account(HOUSEHOLD, account_id)['balance'] == pytest.approx(12.34)
    assert verifier.verify(HOUSEHOLD) == []

    log = db.get_repair_log(HOUSEHOLD)
    assert log[0]['action'] == 'repair_money_drift'
    assert log[0]['table_name'] == 'accounts'


def test_households_are_checked_separately(db, verifier, make_account):
    make_account(household_id=OTHER_HOUSEHOLD, opening_balance=1)
    with db.db_connection() as conn:
        conn.execute("UPDATE accounts SET balance = 99 WHERE household_id = ?", (OTHER_HOUSEHOLD,))

    assert verifier.verify(HOUSEHOLD) == []
    results = verifier.verify_all()
    assert len(results[OTHER_HOUSEHOLD]) == 1


def test_transfer_committed_during_scan_is_not_half_seen(db, verifier, make_account, monkeypatch):
    """The scan reads one snapshot: a transfer committing between its queries is invisible."""
    checking = make_account(name="Checking", opening_balance=500)
    savings = make_account(name="Savings")
    read_rows = verifier_module.rows
    created = []

    def commit_transfer_after_leg_query(conn, query, params=()):
        result = read_rows(conn, query, params)
        if 'transfer_out' in query and not created:
            created.append(TransferService(db).create_transfer(HOUSEHOLD, {
                'from_account_id': checking,
                'to_account_id': savings,
                'amount': '20.00',
                'transfer_date': '2024-08-02',
            }))
        return result

    monkeypatch.setattr(verifier_module, 'rows', commit_transfer_after_leg_query)
    assert verifier.verify(HOUSEHOLD) == []
    assert created

    monkeypatch.undo()
    assert verifier.verify(HOUSEHOLD) == []
    assert len(TransferService(db).list_transfers(HOUSEHOLD)) == 1


def test_audit_combines_violations_and_balance_drift(db, verifier, transfer):
    source = db.get_transaction(HOUSEHOLD, transfer['from_transaction_id'])['account_id']
    with db.db_connection() as conn:
        conn.execute("UPDATE accounts SET balance = balance + 1, balance_cents = balance_cents + 100 "
                     "WHERE id = ?", (source,))

    violations, drifted = verifier.audit(HOUSEHOLD)
    assert violations == []
    assert [(account['account_id'], account['difference_cents']) for account in drifted] == [
        (source, 100)
    ]
