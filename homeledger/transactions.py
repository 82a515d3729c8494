"""
Home Ledger - Transactions

Income and expense bookings on a single account. Every write moves the
account balance and cascades to linked bills, debts and savings goals inside
the same atomic unit. Transfer legs are handed to TransferService.
"""
import logging
from typing import Dict, Any, List, Optional

from homeledger.cascade import RecalculationCoordinator, validate_links
from homeledger.database import (
    LedgerDatabase,
    LEGACY_TRANSFER_TYPE,
    TRANSFER_TYPES,
    fetch_row,
    insert_row,
    now,
    retry_on_conflict,
    rows,
    update_row,
)
from homeledger.exceptions import NotFoundError, ValidationError
from homeledger.ledger import move_effect, require_active_account
from homeledger.money import money_fields, to_minor_units
from homeledger.transfers import TransferService
from homeledger.validators import (
    require_amount,
    require_date,
    validate_goal_allocations,
    validate_required_fields,
    validate_splits,
)

logger = logging.getLogger(__name__)

SIGNS = {'income': 1, 'expense': -1}
LINK_COLUMNS = ('category_id', 'bill_instance_id', 'debt_id', 'savings_goal_id')
UPDATABLE_COLUMNS = {
    'account_id', 'transaction_date', 'amount', 'transaction_type', 'description', 'notes',
    'splits', 'goal_contributions', *LINK_COLUMNS,
}


class TransactionService:
    """Create, edit and delete income and expense transactions."""

    def __init__(self, db: LedgerDatabase,
                 coordinator: Optional[RecalculationCoordinator] = None,
                 transfers: Optional[TransferService] = None):
        self.db = db
        self.coordinator = coordinator or RecalculationCoordinator(db)
        self.transfers = transfers or TransferService(db, self.coordinator)

    @staticmethod
    def _signed(transaction_type: str, magnitude_cents: int) -> int:
        """Income is positive, expense negative. Callers give a positive magnitude."""
        if transaction_type in TRANSFER_TYPES or transaction_type == LEGACY_TRANSFER_TYPE:
            raise ValidationError("Money moved between accounts must be booked as a transfer")
        if transaction_type not in SIGNS:
            raise ValidationError(f"Invalid transaction type: {transaction_type}")
        return SIGNS[transaction_type] * require_amount(magnitude_cents, "Amount")

    def _resolve_allocations(self, conn, household_id: str, savings_goal_id: Optional[int],
                             allocations: List[Dict[str, Any]], amount_cents: int) -> List[Dict[str, Any]]:
        if savings_goal_id is not None:
            raise ValidationError("Use either savings_goal_id or goal_contributions, not both")
        resolved = validate_goal_allocations(allocations, amount_cents)
        for allocation in resolved:
            validate_links(conn, household_id, {'savings_goal_id': allocation['savings_goal_id']})
        return resolved

    def _write_splits(self, conn, household_id: str, transaction_id: int,
                      resolved: Optional[List[Dict[str, Any]]]) -> None:
        conn.execute(
            "DELETE FROM transaction_splits WHERE transaction_id = ? AND household_id = ?",
            (transaction_id, household_id)
        )
        for split in resolved or []:
            validate_links(conn, household_id, {'category_id': split['category_id']})
            insert_row(conn, 'transaction_splits', {
                'household_id': household_id,
                'transaction_id': transaction_id,
                'category_id': split['category_id'],
                **money_fields(split['amount_cents'], 'amount'),
                'percentage': split['percentage'],
                'description': split['description'] or '',
                'sort_order': split['sort_order'],
                'created_at': now(),
            })

    @retry_on_conflict
    def create_transaction(self, household_id: str, transaction_data: Dict[str, Any]) -> int:
        """
        Book an income or expense.

        Args:
            household_id: Owning household
            transaction_data: account_id, transaction_date, transaction_type
                ('income' or 'expense'), amount as a positive magnitude, and
                optionally description, notes, category_id, bill_instance_id,
                debt_id, savings_goal_id, splits, and goal_contributions (a list of
                savings_goal_id and amount spreading the transaction over
                several goals)

        Returns:
            The ID of the new transaction

        Raises:
            ValidationError: Missing fields, bad amount, inactive account,
                unknown linked entity, splits that do not sum to the amount, or
                goal contributions exceeding it
        """
        is_valid, errors = validate_required_fields({
            'account_id': transaction_data.get('account_id'),
            'transaction_date': transaction_data.get('transaction_date'),
            'transaction_type': transaction_data.get('transaction_type'),
        })
        if not is_valid:
            raise ValidationError("; ".join(errors))

        transaction_date = require_date(transaction_data['transaction_date'], "Transaction date")
        amount_cents = self._signed(transaction_data['transaction_type'],
                                    to_minor_units(transaction_data.get('amount')))
        splits = transaction_data.get('splits')
        resolved = validate_splits(splits, amount_cents) if splits else None
        links = {column: transaction_data.get(column) for column in LINK_COLUMNS}

        with self.db.db_connection(commit=True) as conn:
            require_active_account(conn, household_id, transaction_data['account_id'])
            validate_links(conn, household_id, links)
            allocations = None
            if transaction_data.get('goal_contributions'):
                allocations = self._resolve_allocations(conn, household_id, links['savings_goal_id'],
                                                        transaction_data['goal_contributions'], amount_cents)

            transaction_id = insert_row(conn, 'transactions', {
                'household_id': household_id,
                'account_id': transaction_data['account_id'],
                'transaction_date': transaction_date,
                **money_fields(amount_cents, 'amount'),
                'transaction_type': transaction_data['transaction_type'],
                'description': transaction_data.get('description') or '',
                'notes': transaction_data.get('notes'),
                **links,
                'is_split': bool(resolved),
                'created_at': now(),
            })
            if resolved:
                self._write_splits(conn, household_id, transaction_id, resolved)

            row = fetch_row(conn, 'transactions', household_id, transaction_id, "Transaction")
            move_effect(conn, household_id, None, row)
            self.coordinator.on_transaction_change(conn, household_id, None, row)
            if allocations:
                self.coordinator.record_goal_allocations(conn, household_id, row, allocations)

        logger.info(f"Added transaction {transaction_id}: {amount_cents:+d} cents on account {row['account_id']}")
        return transaction_id

    @retry_on_conflict
    def update_transaction(self, household_id: str, transaction_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Edit an income or expense.

        The old effect is reversed on the old account and the new effect
        applied on the new account in one unit, then linked entities are
        recalculated. A split transaction whose amount changes needs new
        splits in the same update. One spread over several savings goals
        needs new goal_contributions when its amount changes.

        Raises:
            NotFoundError: If the transaction is not in the household
            ValidationError: Invalid fields, transfer legs, or stale splits
        """
        invalid_keys = set(updates.keys()) - UPDATABLE_COLUMNS
        if invalid_keys:
            raise ValidationError(f"Invalid columns for transactions update: {sorted(invalid_keys)}")

        with self.db.db_connection(commit=True) as conn:
            old = fetch_row(conn, 'transactions', household_id, transaction_id, "Transaction")
            if old['transaction_type'] in TRANSFER_TYPES or old['transaction_type'] == LEGACY_TRANSFER_TYPE:
                raise ValidationError("Transfer legs are edited through their transfer")

            transaction_type = updates.get('transaction_type', old['transaction_type'])
            if 'amount' in updates:
                magnitude = to_minor_units(updates['amount'])
            else:
                magnitude = abs(old['amount_cents'])
            amount_cents = self._signed(transaction_type, magnitude)

            changes: Dict[str, Any] = {
                'transaction_type': transaction_type,
                **money_fields(amount_cents, 'amount'),
                'updated_at': now(),
            }
            for column in ('description', 'notes', *LINK_COLUMNS):
                if column in updates:
                    changes[column] = updates[column]
            if 'transaction_date' in updates:
                changes['transaction_date'] = require_date(updates['transaction_date'], "Transaction date")

            if 'account_id' in updates and updates['account_id'] != old['account_id']:
                require_active_account(conn, household_id, updates['account_id'])
                changes['account_id'] = updates['account_id']

            validate_links(conn, household_id, {column: updates.get(column) for column in LINK_COLUMNS})

            if updates.get('splits'):
                self._write_splits(conn, household_id, transaction_id, validate_splits(updates['splits'], amount_cents))
                changes['is_split'] = True
            elif 'splits' in updates:
                self._write_splits(conn, household_id, transaction_id, None)
                changes['is_split'] = False
            elif old['is_split'] and amount_cents != old['amount_cents']:
                raise ValidationError("Amount changed on a split transaction; provide the new splits")

            savings_goal_id = changes.get('savings_goal_id', old['savings_goal_id'])
            allocations = None
            if updates.get('goal_contributions'):
                allocations = self._resolve_allocations(conn, household_id, savings_goal_id,
                                                        updates['goal_contributions'], amount_cents)
            elif 'goal_contributions' not in updates and savings_goal_id is None and old['savings_goal_id'] is None:
                allocations = rows(conn, """
                    SELECT goal_id AS savings_goal_id, amount_cents FROM goal_contributions
                    WHERE transaction_id = ? AND household_id = ?
                    ORDER BY id
                """, (transaction_id, household_id))
                if allocations and amount_cents != old['amount_cents']:
                    raise ValidationError(
                        "Amount changed on a transaction spread over several savings goals; "
                        "provide the new goal contributions"
                    )

            update_row(conn, 'transactions', household_id, transaction_id, changes)
            new = fetch_row(conn, 'transactions', household_id, transaction_id, "Transaction")
            move_effect(conn, household_id, old, new)
            self.coordinator.on_transaction_change(conn, household_id, old, new)
            if savings_goal_id is None and ('goal_contributions' in updates or allocations):
                # Allocations are rebooked from scratch
                self.coordinator.revert_goal_contribution(conn, household_id, transaction_id)
            if allocations:
                self.coordinator.record_goal_allocations(conn, household_id, new, allocations)

        logger.info(f"Updated transaction {transaction_id}")
        return self.db.get_transaction(household_id, transaction_id)

    @retry_on_conflict
    def delete_transaction(self, household_id: str, transaction_id: int) -> Dict[str, Any]:
        """
        Delete a transaction and reverse its effects.

        Deleting either leg of a transfer deletes the whole transfer.
        """
        with self.db.db_connection(commit=True) as conn:
            row = fetch_row(conn, 'transactions', household_id, transaction_id, "Transaction")
            if row['transaction_type'] in TRANSFER_TYPES:
                deleted = self.transfers.delete_pair_of(conn, household_id, row)
            else:
                move_effect(conn, household_id, row, None)
                conn.execute(
                    "DELETE FROM transactions WHERE id = ? AND household_id = ?",
                    (transaction_id, household_id)
                )
                self.coordinator.on_transaction_change(conn, household_id, row, None)
                deleted = [transaction_id]

        logger.info(f"Deleted transaction(s) {deleted}")
        return {'deleted_transaction_ids': deleted}

    @retry_on_conflict
    def replace_splits(self, household_id: str, transaction_id: int,
                       splits: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Replace all splits of a transaction. An empty list removes the split."""
        with self.db.db_connection(commit=True) as conn:
            row = fetch_row(conn, 'transactions', household_id, transaction_id, "Transaction")
            if row['transaction_type'] in TRANSFER_TYPES:
                raise ValidationError("Transfer legs cannot be split")

            resolved = validate_splits(splits, row['amount_cents']) if splits else None
            self._write_splits(conn, household_id, transaction_id, resolved)
            update_row(conn, 'transactions', household_id, transaction_id,
                       {'is_split': bool(resolved), 'updated_at': now()})

        logger.info(f"Replaced splits of transaction {transaction_id} ({len(splits or [])} split(s))")
        transaction = self.db.get_transaction(household_id, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction['splits']
