"""
Home Ledger - Account balance ledger

An account balance is its opening balance plus the signed amount of every
transaction on it. balance_cents is only ever moved by a signed delta, and
the REAL balance column is rewritten from it in the same statement.
"""
import logging
from typing import Dict, Any, List, Optional

from homeledger.database import (
    LedgerDatabase,
    CREDIT_ACCOUNT_TYPES,
    fetch_row,
    now,
    retry_on_conflict,
    rows,
    write_repair_log,
)
from homeledger.exceptions import NotFoundError, ValidationError
from homeledger.money import INT64_MAX, ensure_cents, money_fields

logger = logging.getLogger(__name__)


def apply_account_delta(conn, household_id: str, account_id: int, signed_cents: int) -> int:
    """
    Add signed_cents to an account inside the caller's atomic unit.

    Args:
        conn: Connection holding the write lock
        household_id: Owning household
        account_id: Account to move
        signed_cents: Positive to credit, negative to debit

    Returns:
        The new balance in cents

    Raises:
        NotFoundError: If the account is not in the household
        ValidationError: If the delta or the resulting balance is out of range
    """
    ensure_cents(signed_cents, "Balance delta")
    row = conn.execute(
        "SELECT balance_cents FROM accounts WHERE id = ? AND household_id = ?",
        (account_id, household_id)
    ).fetchone()
    if row is None:
        raise NotFoundError(f"Account {account_id} not found")

    new_balance = row['balance_cents'] + signed_cents
    if abs(new_balance) > INT64_MAX:
        raise ValidationError(f"Balance of account {account_id} would overflow")
    if signed_cents == 0:
        return new_balance

    # Both SET expressions read the pre-update balance_cents
    conn.execute("""
        UPDATE accounts
        SET balance_cents = balance_cents + ?,
            balance = (balance_cents + ?) / 100.0,
            updated_at = ?
        WHERE id = ? AND household_id = ?
    """, (signed_cents, signed_cents, now(), account_id, household_id))

    logger.debug(f"Account {account_id}: {signed_cents:+d} cents -> {new_balance}")
    return new_balance


def require_active_account(conn, household_id: str, account_id: Any, label: str = "Account") -> Dict[str, Any]:
    """
    Load an account that new money may be booked against.

    Raises:
        ValidationError: If the account is missing, foreign or deactivated
    """
    if account_id is None:
        raise ValidationError(f"{label} is required")
    try:
        account = fetch_row(conn, 'accounts', household_id, account_id, label)
    except NotFoundError as e:
        raise ValidationError(f"{label} {account_id} does not exist") from e
    if not account['is_active']:
        raise ValidationError(f"{label} {account_id} is inactive")
    return account


def move_effect(conn, household_id: str, old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> None:
    """Reverse the old row's effect on its account, then apply the new row's effect."""
    if old is not None:
        apply_account_delta(conn, household_id, old['account_id'], -old['amount_cents'])
    if new is not None:
        apply_account_delta(conn, household_id, new['account_id'], new['amount_cents'])


def available_credit_cents(account: Dict[str, Any]) -> Optional[int]:
    """
    Credit still available on a credit or line-of-credit account.

    Spending on a credit account drives its balance negative, so the amount
    owed is the negative part of the balance.
    """
    if account['account_type'] not in CREDIT_ACCOUNT_TYPES or account['credit_limit_cents'] is None:
        return None
    owed = max(-account['balance_cents'], 0)
    return account['credit_limit_cents'] - owed


def ledger_totals(conn, household_id: str) -> List[Dict[str, Any]]:
    """Stored and expected (opening + sum of transactions) balance per account."""
    return rows(conn, """
        SELECT a.id, a.name, a.balance_cents, a.opening_balance_cents,
               a.opening_balance_cents + COALESCE(SUM(t.amount_cents), 0) AS expected_cents,
               COUNT(t.id) AS transaction_count
        FROM accounts a
        LEFT JOIN transactions t ON t.account_id = a.id AND t.household_id = a.household_id
        WHERE a.household_id = ?
        GROUP BY a.id
        ORDER BY a.id
    """, (household_id,))


def balance_drift(conn, household_id: str) -> List[Dict[str, Any]]:
    """One entry per account whose stored balance differs from its ledger."""
    drifted = []
    for account in ledger_totals(conn, household_id):
        difference = account['balance_cents'] - account['expected_cents']
        if difference != 0:
            drifted.append({
                'account_id': account['id'],
                'name': account['name'],
                'balance_cents': account['balance_cents'],
                'expected_cents': account['expected_cents'],
                'difference_cents': difference,
            })
    return drifted


class AccountLedger:
    """Balance reads and writes for household accounts."""

    def __init__(self, db: LedgerDatabase):
        self.db = db

    @retry_on_conflict
    def apply_delta(self, household_id: str, account_id: int, signed_cents: int) -> int:
        """Atomically move an account balance by signed_cents. Returns the new balance."""
        with self.db.db_connection(commit=True) as conn:
            new_balance = apply_account_delta(conn, household_id, account_id, signed_cents)
        logger.info(f"Applied {signed_cents:+d} cents to account {account_id}")
        return new_balance

    def reverse_delta(self, household_id: str, account_id: int, signed_cents: int) -> int:
        """Undo a delta previously applied with apply_delta()."""
        return self.apply_delta(household_id, account_id, -ensure_cents(signed_cents, "Balance delta"))

    def get_balance(self, household_id: str, account_id: int) -> Dict[str, Any]:
        """Current balance, plus available credit for credit accounts."""
        with self.db.db_connection(commit=False) as conn:
            account = fetch_row(conn, 'accounts', household_id, account_id, "Account")

        return {
            'account_id': account_id,
            'balance_cents': account['balance_cents'],
            'balance': account['balance'],
            'credit_limit_cents': account['credit_limit_cents'],
            'available_credit_cents': available_credit_cents(account),
        }

    def verify_balances(self, household_id: str) -> List[Dict[str, Any]]:
        """
        Compare every stored balance with opening balance + sum of transactions.

        Read-only. Returns one entry per drifted account.
        """
        with self.db.db_connection(commit=False) as conn:
            drifted = balance_drift(conn, household_id)

        if drifted:
            logger.warning(f"{len(drifted)} account balance(s) drifted in household {household_id}")
        return drifted

    @retry_on_conflict
    def recalculate_balances(self, household_id: str, actor: str, dry_run: bool = False) -> Dict[str, Any]:
        """
        Rewrite drifted balances from the transaction ledger.

        This is an explicit repair: every rewritten balance is recorded in
        repair_log with its before and after values.

        Args:
            household_id: Household to repair
            actor: Who requested the repair, stored in repair_log
            dry_run: Report what would change without writing

        Returns:
            Dictionary with statistics and the list of changes
        """
        with self.db.db_connection(commit=not dry_run) as conn:
            totals = ledger_totals(conn, household_id)
            changes = []

            for account in totals:
                if account['balance_cents'] == account['expected_cents']:
                    continue
                changes.append({
                    'account_id': account['id'],
                    'name': account['name'],
                    'old_balance_cents': account['balance_cents'],
                    'new_balance_cents': account['expected_cents'],
                })
                if dry_run:
                    continue

                conn.execute("""
                    UPDATE accounts
                    SET balance = ?, balance_cents = ?, updated_at = ?
                    WHERE id = ? AND household_id = ?
                """, (
                    *money_fields(account['expected_cents'], 'balance').values(),
                    now(), account['id'], household_id
                ))
                write_repair_log(
                    conn, household_id, 'accounts', account['id'], 'recalculate_balance',
                    {'balance_cents': account['balance_cents']},
                    {'balance_cents': account['expected_cents']},
                    actor
                )
                logger.info(
                    f"Recalculated account {account['id']}: "
                    f"{account['balance_cents']} -> {account['expected_cents']} cents"
                )

        return {
            'accounts_checked': len(totals),
            'accounts_updated': 0 if dry_run else len(changes),
            'dry_run': dry_run,
            'changes': changes,
        }
