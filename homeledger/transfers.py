"""
Home Ledger - Transfers

A transfer is two transactions sharing one transfer_id: a transfer_out leg
on the source account debited with amount + fee, and a transfer_in leg on
the destination credited with amount. Both legs, both balance moves and the
transfers record are always written, edited and removed in one atomic unit.
"""
import logging
import uuid
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

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
from homeledger.exceptions import ConsistencyViolation, NotFoundError, ValidationError
from homeledger.ledger import move_effect, require_active_account
from homeledger.money import money_fields, to_minor_units
from homeledger.validators import require_amount, require_date

logger = logging.getLogger(__name__)

FINANCIAL_FIELDS = ('amount', 'source_amount', 'fee', 'from_account_id', 'to_account_id')
DESCRIPTIVE_FIELDS = ('transfer_date', 'description', 'notes')
LEG_LINKS = ('category_id', 'bill_instance_id', 'debt_id', 'savings_goal_id')
LEG_EDITABLE_FIELDS = ('amount', 'account_id', 'transaction_date', 'description', 'notes')


class TransferState(Enum):
    ABSENT = 'absent'
    PENDING_CREATE = 'pending-create'
    PAIRED = 'paired'
    PENDING_EDIT = 'pending-edit'
    PENDING_DELETE = 'pending-delete'
    # Record exists but a leg is gone; it can only be deleted
    BROKEN = 'broken'


ALLOWED_TRANSITIONS = {
    TransferState.ABSENT: {TransferState.PENDING_CREATE},
    TransferState.PENDING_CREATE: {TransferState.PAIRED},
    TransferState.PAIRED: {TransferState.PENDING_EDIT, TransferState.PENDING_DELETE},
    TransferState.PENDING_EDIT: {TransferState.PAIRED},
    TransferState.PENDING_DELETE: {TransferState.ABSENT},
    TransferState.BROKEN: {TransferState.PENDING_DELETE},
}


def transfer_state(transfer: Optional[Dict[str, Any]], legs: List[Dict[str, Any]]) -> TransferState:
    """Derive the stored state of a transfer from its record and the legs found for it."""
    if transfer is None:
        return TransferState.ABSENT
    types = sorted(leg['transaction_type'] for leg in legs)
    if types == ['transfer_in', 'transfer_out']:
        return TransferState.PAIRED
    return TransferState.BROKEN


def _transition(transfer_id: str, current: TransferState, target: TransferState) -> TransferState:
    if target not in ALLOWED_TRANSITIONS[current]:
        if current is TransferState.BROKEN:
            raise ConsistencyViolation(
                [('transfers', transfer_id, 'transfer_missing_legs')],
                f"Transfer {transfer_id} is missing a leg and can only be deleted"
            )
        raise ValidationError(f"Transfer {transfer_id} cannot go from {current.value} to {target.value}")
    logger.debug(f"Transfer {transfer_id}: {current.value} -> {target.value}")
    return target


def new_transfer_id() -> str:
    return uuid.uuid4().hex


def find_paired_transaction(conn, household_id: str, transaction: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Find the other leg: by paired_transaction_id first, then by shared transfer_id."""
    if transaction.get('paired_transaction_id') is not None:
        row = conn.execute(
            "SELECT * FROM transactions WHERE id = ? AND household_id = ?",
            (transaction['paired_transaction_id'], household_id)
        ).fetchone()
        if row is not None:
            return dict(row)

    if transaction.get('transfer_id'):
        row = conn.execute("""
            SELECT * FROM transactions
            WHERE transfer_id = ? AND household_id = ? AND id != ?
            ORDER BY id LIMIT 1
        """, (transaction['transfer_id'], household_id, transaction['id'])).fetchone()
        if row is not None:
            return dict(row)

    return None


class TransferService:
    """Create, edit, delete and migrate transfer pairs."""

    def __init__(self, db: LedgerDatabase, coordinator: Optional[RecalculationCoordinator] = None):
        self.db = db
        self.coordinator = coordinator or RecalculationCoordinator(db)

    # ==================== READ ====================

    def get_transfer(self, household_id: str, transfer_id: str) -> Dict[str, Any]:
        """Get a transfer record with its legs."""
        with self.db.db_connection(commit=False) as conn:
            transfer = fetch_row(conn, 'transfers', household_id, transfer_id, "Transfer")
            transfer['legs'] = rows(conn, """
                SELECT * FROM transactions
                WHERE transfer_id = ? AND household_id = ?
                ORDER BY CASE transaction_type WHEN 'transfer_out' THEN 0 ELSE 1 END
            """, (transfer_id, household_id))
            return transfer

    def list_transfers(self, household_id: str, account_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM transfers WHERE household_id = ?"
        params: List[Any] = [household_id]
        if account_id is not None:
            query += " AND (from_account_id = ? OR to_account_id = ?)"
            params.extend([account_id, account_id])
        with self.db.db_connection(commit=False) as conn:
            return rows(conn, query + " ORDER BY transfer_date DESC, created_at DESC", params)

    # ==================== CREATE ====================

    @retry_on_conflict
    def create_transfer(self, household_id: str, transfer_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a transfer between two accounts of the household.

        Args:
            household_id: Owning household
            transfer_data: from_account_id, to_account_id, amount, transfer_date,
                optional fee, description, notes and savings_goal_id (attached to
                the incoming leg)

        Returns:
            Dictionary with transfer_id and both leg ids

        Raises:
            ValidationError: Same source and destination, bad amounts, inactive
                or foreign accounts, unknown savings goal
        """
        terms = self._read_terms(transfer_data)
        transfer_date = require_date(transfer_data.get('transfer_date'), "Transfer date")

        transfer_id = new_transfer_id()
        state = _transition(transfer_id, TransferState.ABSENT, TransferState.PENDING_CREATE)

        with self.db.db_connection(commit=True) as conn:
            out_leg, in_leg = self._write_pair(
                conn, household_id, transfer_id, terms,
                transfer_date=transfer_date,
                description=transfer_data.get('description', ''),
                notes=transfer_data.get('notes'),
                in_links={'savings_goal_id': transfer_data.get('savings_goal_id')},
            )
            insert_row(conn, 'transfers', {
                'id': transfer_id,
                'household_id': household_id,
                'from_account_id': terms['from_account_id'],
                'to_account_id': terms['to_account_id'],
                **money_fields(terms['amount_cents'], 'amount'),
                **money_fields(terms['fee_cents'], 'fees'),
                'transfer_date': transfer_date,
                'description': transfer_data.get('description', ''),
                'notes': transfer_data.get('notes'),
                'status': 'completed',
                'from_transaction_id': out_leg['id'],
                'to_transaction_id': in_leg['id'],
                'created_at': now(),
            })
            state = _transition(transfer_id, state, TransferState.PAIRED)

        logger.info(
            f"Created transfer {transfer_id}: {terms['amount_cents']} cents "
            f"(fee {terms['fee_cents']}) from account {terms['from_account_id']} to {terms['to_account_id']}"
        )
        return {
            'transfer_id': transfer_id,
            'from_transaction_id': out_leg['id'],
            'to_transaction_id': in_leg['id'],
            'amount_cents': terms['amount_cents'],
            'fees_cents': terms['fee_cents'],
        }

    def _read_terms(self, data: Dict[str, Any], current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Resolve the financial terms of a transfer, falling back to the current record.

        source_amount is the total debited from the source; it sets the
        transfer amount to source_amount - fee.
        """
        current = current or {}

        if 'fee' in data or not current:
            fee_cents = to_minor_units(data.get('fee') or 0, "Transfer fee")
        else:
            fee_cents = current['fees_cents']
        require_amount(fee_cents, "Transfer fee", allow_zero=True)

        if 'source_amount' in data:
            if 'amount' in data:
                raise ValidationError("Give either amount or source_amount, not both")
            source_cents = require_amount(to_minor_units(data['source_amount'], "Source amount"), "Source amount")
            if source_cents <= fee_cents:
                raise ValidationError("Source amount must be larger than the transfer fee")
            amount_cents = source_cents - fee_cents
        elif 'amount' in data or not current:
            amount_cents = to_minor_units(data.get('amount'), "Transfer amount")
        else:
            amount_cents = current['amount_cents']
        require_amount(amount_cents, "Transfer amount")

        from_account_id = data.get('from_account_id', current.get('from_account_id'))
        to_account_id = data.get('to_account_id', current.get('to_account_id'))
        if from_account_id is None or to_account_id is None:
            raise ValidationError("Source and destination accounts are required")
        if from_account_id == to_account_id:
            raise ValidationError("Cannot transfer to the same account")

        return {
            'from_account_id': from_account_id,
            'to_account_id': to_account_id,
            'amount_cents': amount_cents,
            'fee_cents': fee_cents,
        }

    def _write_pair(self, conn, household_id: str, transfer_id: str, terms: Dict[str, Any],
                    transfer_date: str, description: str, notes: Optional[str],
                    out_links: Optional[Dict[str, Any]] = None,
                    in_links: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Insert both legs, cross-link them, move both balances and cascade."""
        require_active_account(conn, household_id, terms['from_account_id'], "Source account")
        require_active_account(conn, household_id, terms['to_account_id'], "Destination account")
        out_links = {k: v for k, v in (out_links or {}).items() if v is not None}
        in_links = {k: v for k, v in (in_links or {}).items() if v is not None}
        validate_links(conn, household_id, out_links)
        validate_links(conn, household_id, in_links)

        common = {
            'household_id': household_id,
            'transaction_date': transfer_date,
            'description': description or '',
            'notes': notes,
            'transfer_id': transfer_id,
            'created_at': now(),
        }
        out_id = insert_row(conn, 'transactions', {
            **common,
            **out_links,
            'account_id': terms['from_account_id'],
            'transaction_type': 'transfer_out',
            **money_fields(-(terms['amount_cents'] + terms['fee_cents']), 'amount'),
            'transfer_account_id': terms['to_account_id'],
        })
        in_id = insert_row(conn, 'transactions', {
            **common,
            **in_links,
            'account_id': terms['to_account_id'],
            'transaction_type': 'transfer_in',
            **money_fields(terms['amount_cents'], 'amount'),
            'transfer_account_id': terms['from_account_id'],
            'paired_transaction_id': out_id,
        })
        update_row(conn, 'transactions', household_id, out_id, {'paired_transaction_id': in_id})

        out_leg = fetch_row(conn, 'transactions', household_id, out_id, "Transaction")
        in_leg = fetch_row(conn, 'transactions', household_id, in_id, "Transaction")
        for leg in (out_leg, in_leg):
            move_effect(conn, household_id, None, leg)
            self.coordinator.on_transaction_change(conn, household_id, None, leg)
        return out_leg, in_leg

    # ==================== EDIT ====================

    @retry_on_conflict
    def update_transfer(self, household_id: str, transfer_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Edit a transfer.

        Changing the amount, fee, source or destination deletes and recreates
        both legs with the new terms (same transfer_id, new leg ids, links
        carried over). Changing only the date, description or notes updates
        both legs in place without touching balances.

        Raises:
            NotFoundError: If the transfer is not in the household
            ConsistencyViolation: If a leg is missing; such a transfer can only be deleted
        """
        unknown = set(updates) - set(FINANCIAL_FIELDS) - set(DESCRIPTIVE_FIELDS)
        if unknown:
            raise ValidationError(f"Invalid fields for transfer update: {sorted(unknown)}")
        if 'transfer_date' in updates:
            updates = {**updates, 'transfer_date': require_date(updates['transfer_date'], "Transfer date")}

        with self.db.db_connection(commit=True) as conn:
            transfer = fetch_row(conn, 'transfers', household_id, transfer_id, "Transfer")
            legs = self._legs(conn, household_id, transfer)
            state = _transition(transfer_id, transfer_state(transfer, legs), TransferState.PENDING_EDIT)

            terms = self._read_terms(updates, current=transfer)
            financial = (
                terms['amount_cents'] != transfer['amount_cents']
                or terms['fee_cents'] != transfer['fees_cents']
                or terms['from_account_id'] != transfer['from_account_id']
                or terms['to_account_id'] != transfer['to_account_id']
            )
            descriptive = {
                field: updates.get(field, transfer[field]) for field in DESCRIPTIVE_FIELDS
            }

            out_leg = next((leg for leg in legs if leg['transaction_type'] == 'transfer_out'), None)
            in_leg = next((leg for leg in legs if leg['transaction_type'] == 'transfer_in'), None)

            record = {
                'from_account_id': terms['from_account_id'],
                'to_account_id': terms['to_account_id'],
                **money_fields(terms['amount_cents'], 'amount'),
                **money_fields(terms['fee_cents'], 'fees'),
                **descriptive,
                'updated_at': now(),
            }

            if financial:
                self._remove_legs(conn, household_id, [out_leg, in_leg])
                new_out, new_in = self._write_pair(
                    conn, household_id, transfer_id, terms,
                    transfer_date=descriptive['transfer_date'],
                    description=descriptive['description'],
                    notes=descriptive['notes'],
                    out_links={key: out_leg.get(key) for key in LEG_LINKS},
                    in_links={key: in_leg.get(key) for key in LEG_LINKS},
                )
                record['from_transaction_id'] = new_out['id']
                record['to_transaction_id'] = new_in['id']
                logger.info(f"Re-created legs of transfer {transfer_id}")
            else:
                for leg in legs:
                    changes = {
                        'transaction_date': descriptive['transfer_date'],
                        'description': descriptive['description'] or '',
                        'notes': descriptive['notes'],
                        'updated_at': now(),
                    }
                    update_row(conn, 'transactions', household_id, leg['id'], changes)
                    self.coordinator.on_transaction_change(conn, household_id, leg, {**leg, **changes})
                logger.info(f"Updated details of transfer {transfer_id}")

            update_row(conn, 'transfers', household_id, transfer_id, record)
            state = _transition(transfer_id, state, TransferState.PAIRED)

        return self.get_transfer(household_id, transfer_id)

    def update_from_leg(self, household_id: str, transaction_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a transaction edit made on one leg to its whole transfer.

        account_id moves the side the leg is on. On the transfer_in leg,
        amount is the transfer amount; on the transfer_out leg it is the total
        debited, so the fee is kept and the transfer amount becomes
        amount - fee.

        Raises:
            NotFoundError: If the leg is not in the household
            ValidationError: If the transaction is not a paired leg, or the
                edit touches a field a leg cannot change on its own
        """
        unsupported = set(updates) - set(LEG_EDITABLE_FIELDS)
        if unsupported:
            raise ValidationError(
                f"Cannot change {sorted(unsupported)} on a transfer leg; edit or delete the transfer instead"
            )

        leg = self.db.get_transaction(household_id, transaction_id)
        if leg is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if leg['transaction_type'] not in TRANSFER_TYPES or not leg['transfer_id']:
            raise ValidationError(f"Transaction {transaction_id} is not part of a transfer")

        outgoing = leg['transaction_type'] == 'transfer_out'
        mapping = {
            'amount': 'source_amount' if outgoing else 'amount',
            'account_id': 'from_account_id' if outgoing else 'to_account_id',
            'transaction_date': 'transfer_date',
            'description': 'description',
            'notes': 'notes',
        }
        transfer_updates = {mapping[key]: value for key, value in updates.items()}
        return self.update_transfer(household_id, leg['transfer_id'], transfer_updates)

    # ==================== DELETE ====================

    def _legs(self, conn, household_id: str, transfer: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Legs referenced by the record or carrying its transfer_id."""
        found = rows(conn, """
            SELECT * FROM transactions
            WHERE household_id = ?
              AND (id IN (?, ?) OR transfer_id = ?)
            ORDER BY id
        """, (household_id, transfer['from_transaction_id'], transfer['to_transaction_id'], transfer['id']))
        return found

    def _remove_legs(self, conn, household_id: str, legs: List[Dict[str, Any]]) -> None:
        for leg in legs:
            move_effect(conn, household_id, leg, None)
            conn.execute("DELETE FROM transactions WHERE id = ? AND household_id = ?", (leg['id'], household_id))
            self.coordinator.on_transaction_change(conn, household_id, leg, None)

    def _delete_in(self, conn, household_id: str, transfer_id: str) -> List[int]:
        transfer = fetch_row(conn, 'transfers', household_id, transfer_id, "Transfer")
        legs = self._legs(conn, household_id, transfer)
        state = _transition(transfer_id, transfer_state(transfer, legs), TransferState.PENDING_DELETE)
        if len(legs) != 2:
            logger.warning(f"Transfer {transfer_id} has {len(legs)} leg(s); removing what exists")

        self._remove_legs(conn, household_id, legs)
        conn.execute("DELETE FROM transfers WHERE id = ? AND household_id = ?", (transfer_id, household_id))
        _transition(transfer_id, state, TransferState.ABSENT)
        return [leg['id'] for leg in legs]

    @retry_on_conflict
    def delete_transfer(self, household_id: str, transfer_id: str) -> Dict[str, Any]:
        """Reverse and remove both legs and the transfer record."""
        with self.db.db_connection(commit=True) as conn:
            deleted = self._delete_in(conn, household_id, transfer_id)

        logger.info(f"Deleted transfer {transfer_id} (transactions {deleted})")
        return {'transfer_id': transfer_id, 'deleted_transaction_ids': deleted}

    def delete_pair_of(self, conn, household_id: str, transaction: Dict[str, Any]) -> List[int]:
        """Delete the transfer a leg belongs to, inside the caller's unit."""
        if transaction.get('transfer_id'):
            exists = conn.execute(
                "SELECT 1 FROM transfers WHERE id = ? AND household_id = ?",
                (transaction['transfer_id'], household_id)
            ).fetchone()
            if exists:
                return self._delete_in(conn, household_id, transaction['transfer_id'])

        # Leg without a transfers record: remove it and whatever it is paired with
        legs = [transaction]
        paired = find_paired_transaction(conn, household_id, transaction)
        if paired is not None:
            legs.append(paired)
        logger.warning(f"Transaction {transaction['id']} has no transfer record; removing {len(legs)} leg(s)")
        self._remove_legs(conn, household_id, legs)
        return [leg['id'] for leg in legs]

    @retry_on_conflict
    def delete_transfer_by_transaction(self, household_id: str, transaction_id: int) -> Dict[str, Any]:
        """Delete the whole transfer given the id of either leg."""
        with self.db.db_connection(commit=True) as conn:
            transaction = fetch_row(conn, 'transactions', household_id, transaction_id, "Transaction")
            if transaction['transaction_type'] not in TRANSFER_TYPES:
                raise ValidationError(f"Transaction {transaction_id} is not a transfer leg")
            deleted = self.delete_pair_of(conn, household_id, transaction)

        logger.info(f"Deleted transfer of transaction {transaction_id} (transactions {deleted})")
        return {'transfer_id': transaction['transfer_id'], 'deleted_transaction_ids': deleted}

    # ==================== LINK EXISTING ====================

    @retry_on_conflict
    def link_existing_as_transfer(self, household_id: str, first_id: int, second_id: int) -> Dict[str, Any]:
        """
        Turn two existing transactions into a transfer pair.

        The negative transaction becomes the transfer_out leg and the positive
        one the transfer_in leg. Amounts stay as they are, so balances do not
        move; any shortfall on the destination side is recorded as the fee.

        Raises:
            ValidationError: Same transaction or account, matching signs, an
                existing transfer, split transactions, or a destination larger
                than the source
        """
        if first_id == second_id:
            raise ValidationError("Cannot link a transaction to itself")

        with self.db.db_connection(commit=True) as conn:
            first = fetch_row(conn, 'transactions', household_id, first_id, "Transaction")
            second = fetch_row(conn, 'transactions', household_id, second_id, "Transaction")

            for transaction in (first, second):
                if transaction['transfer_id'] or transaction['transaction_type'] == LEGACY_TRANSFER_TYPE:
                    raise ValidationError(f"Transaction {transaction['id']} is already part of a transfer")
                if transaction['is_split']:
                    raise ValidationError(f"Transaction {transaction['id']} is split and cannot become a transfer")

            if (first['amount_cents'] < 0) == (second['amount_cents'] < 0):
                raise ValidationError("A transfer needs one outgoing and one incoming transaction")
            source, destination = (first, second) if first['amount_cents'] < 0 else (second, first)

            if source['account_id'] == destination['account_id']:
                raise ValidationError("Cannot transfer to the same account")

            out_cents = -source['amount_cents']
            in_cents = destination['amount_cents']
            if in_cents > out_cents:
                raise ValidationError("Destination amount cannot exceed the source amount")

            transfer_id = new_transfer_id()
            timestamp = now()
            for leg, leg_type, other in (
                (source, 'transfer_out', destination),
                (destination, 'transfer_in', source),
            ):
                changes = {
                    'transaction_type': leg_type,
                    'transfer_id': transfer_id,
                    'paired_transaction_id': other['id'],
                    'transfer_account_id': other['account_id'],
                    'category_id': None,
                    'updated_at': timestamp,
                }
                update_row(conn, 'transactions', household_id, leg['id'], changes)
                self.coordinator.on_transaction_change(conn, household_id, leg, {**leg, **changes})

            insert_row(conn, 'transfers', {
                'id': transfer_id,
                'household_id': household_id,
                'from_account_id': source['account_id'],
                'to_account_id': destination['account_id'],
                **money_fields(in_cents, 'amount'),
                **money_fields(out_cents - in_cents, 'fees'),
                'transfer_date': source['transaction_date'],
                'description': source['description'] or destination['description'] or '',
                'status': 'completed',
                'from_transaction_id': source['id'],
                'to_transaction_id': destination['id'],
                'created_at': timestamp,
            })

        logger.info(f"Linked transactions {source['id']} and {destination['id']} as transfer {transfer_id}")
        return {
            'transfer_id': transfer_id,
            'from_transaction_id': source['id'],
            'to_transaction_id': destination['id'],
            'amount_cents': in_cents,
            'fees_cents': out_cents - in_cents,
        }

    # ==================== LEGACY MIGRATION ====================

    @retry_on_conflict
    def migrate_legacy_transfers(self, household_id: str) -> Dict[str, int]:
        """
        Convert single-row 'transfer' transactions into transfer pairs.

        A row whose transfer_account_id names another account of the household
        becomes a transfer_out leg plus a synthesized transfer_in leg on that
        account. A row without a resolvable destination becomes an expense.
        Balances are moved by the difference between the old and new rows, so
        every account still equals its opening balance plus its transactions.

        Returns:
            Dictionary with 'migrated' and 'degraded' counts
        """
        migrated = 0
        degraded = 0

        with self.db.db_connection(commit=True) as conn:
            legacy = rows(conn, """
                SELECT * FROM transactions
                WHERE household_id = ? AND transaction_type = ?
                ORDER BY id
            """, (household_id, LEGACY_TRANSFER_TYPE))

            for row in legacy:
                magnitude = abs(row['amount_cents'])
                destination = None
                if row['transfer_account_id'] is not None and row['transfer_account_id'] != row['account_id']:
                    destination = conn.execute(
                        "SELECT * FROM accounts WHERE id = ? AND household_id = ?",
                        (row['transfer_account_id'], household_id)
                    ).fetchone()

                if destination is None:
                    changes = {
                        'transaction_type': 'expense',
                        **money_fields(-magnitude, 'amount'),
                        'transfer_account_id': None,
                        'updated_at': now(),
                    }
                    self._rewrite(conn, household_id, row, changes)
                    degraded += 1
                    logger.warning(
                        f"Legacy transfer {row['id']} has no resolvable destination; converted to expense"
                    )
                    continue

                transfer_id = new_transfer_id()
                changes = {
                    'transaction_type': 'transfer_out',
                    **money_fields(-magnitude, 'amount'),
                    'transfer_id': transfer_id,
                    'updated_at': now(),
                }
                self._rewrite(conn, household_id, row, changes)

                in_id = insert_row(conn, 'transactions', {
                    'household_id': household_id,
                    'account_id': destination['id'],
                    'transaction_date': row['transaction_date'],
                    **money_fields(magnitude, 'amount'),
                    'transaction_type': 'transfer_in',
                    'description': row['description'] or '',
                    'notes': row['notes'],
                    'transfer_id': transfer_id,
                    'paired_transaction_id': row['id'],
                    'transfer_account_id': row['account_id'],
                    'created_at': now(),
                })
                update_row(conn, 'transactions', household_id, row['id'], {'paired_transaction_id': in_id})
                in_leg = fetch_row(conn, 'transactions', household_id, in_id, "Transaction")
                move_effect(conn, household_id, None, in_leg)

                insert_row(conn, 'transfers', {
                    'id': transfer_id,
                    'household_id': household_id,
                    'from_account_id': row['account_id'],
                    'to_account_id': destination['id'],
                    **money_fields(magnitude, 'amount'),
                    **money_fields(0, 'fees'),
                    'transfer_date': row['transaction_date'],
                    'description': row['description'] or '',
                    'notes': row['notes'],
                    'status': 'completed',
                    'from_transaction_id': row['id'],
                    'to_transaction_id': in_id,
                    'created_at': now(),
                })
                migrated += 1

        logger.info(f"Legacy transfer migration for household {household_id}: "
                    f"{migrated} migrated, {degraded} converted to expense")
        return {'migrated': migrated, 'degraded': degraded}

    def _rewrite(self, conn, household_id: str, row: Dict[str, Any], changes: Dict[str, Any]) -> None:
        update_row(conn, 'transactions', household_id, row['id'], changes)
        updated = {**row, **changes}
        move_effect(conn, household_id, row, updated)
        self.coordinator.on_transaction_change(conn, household_id, row, updated)
