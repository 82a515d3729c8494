"""
Home Ledger - Cascading recalculation

Keeps bill instances, debts and savings goals in step with the transactions
linked to them. The coordinator runs inside the writer's atomic unit, right
after the transaction row was inserted, updated or deleted, so derived
progress commits or rolls back together with the write that caused it.
"""
import logging
from datetime import date
from typing import Dict, Any, List, Optional, Callable

from homeledger.database import (
    LedgerDatabase,
    fetch_row,
    insert_row,
    now,
    retry_on_conflict,
    update_row,
)
from homeledger.exceptions import NotFoundError, ValidationError
from homeledger.interest import split_payment
from homeledger.money import money_fields

logger = logging.getLogger(__name__)

MILESTONE_PERCENTAGES = (25, 50, 75, 100)

LINKS = (
    ('category_id', 'categories', "Category"),
    ('bill_instance_id', 'bill_instances', "Bill instance"),
    ('debt_id', 'debts', "Debt"),
    ('savings_goal_id', 'savings_goals', "Savings goal"),
)


def validate_links(conn, household_id: str, row: Dict[str, Any]) -> None:
    """
    Check that every entity a transaction links to exists in the household.

    Raises:
        ValidationError: If a linked entity is missing or foreign
    """
    for column, table, label in LINKS:
        if row.get(column) is None:
            continue
        try:
            fetch_row(conn, table, household_id, row[column], label)
        except NotFoundError as e:
            raise ValidationError(f"{label} {row[column]} does not exist") from e


def stamp_milestones(conn, household_id: str, entity_type: str, entity_id: int,
                     progress_cents: int, target_cents: int) -> List[int]:
    """
    Stamp every milestone threshold that progress has reached.

    achieved_at is written only where it is still NULL, so a threshold is
    stamped once no matter how often progress crosses it. Stamps are kept
    when progress later falls back below a threshold.

    Returns:
        Percentages stamped by this call
    """
    if target_cents <= 0:
        return []

    stamped = []
    timestamp = now()
    for percentage in MILESTONE_PERCENTAGES:
        threshold_cents = -(-target_cents * percentage // 100)
        conn.execute("""
            INSERT OR IGNORE INTO milestones
            (household_id, entity_type, entity_id, percentage, threshold_amount, threshold_amount_cents, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (household_id, entity_type, entity_id, percentage,
              *money_fields(threshold_cents, 'threshold_amount').values(), timestamp))

        if progress_cents * 100 < target_cents * percentage:
            continue

        cursor = conn.execute("""
            UPDATE milestones SET achieved_at = ?
            WHERE household_id = ? AND entity_type = ? AND entity_id = ? AND percentage = ?
              AND achieved_at IS NULL
        """, (timestamp, household_id, entity_type, entity_id, percentage))
        if cursor.rowcount > 0:
            stamped.append(percentage)
            logger.info(f"Milestone {percentage}% reached for {entity_type} {entity_id}")

    return stamped


class RecalculationCoordinator:
    """Recompute bills, debts and savings goals affected by a transaction change."""

    def __init__(self, db: LedgerDatabase, today: Callable[[], date] = date.today):
        self.db = db
        self.today = today

    def on_transaction_change(self, conn, household_id: str,
                              old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> None:
        """
        Cascade one transaction write.

        Args:
            conn: Connection of the writer's atomic unit
            household_id: Owning household
            old: Row before the write, None for an insert
            new: Row after the write, None for a delete
        """
        old = old or {}
        new = new or {}

        if old.get('debt_id') is not None or new.get('debt_id') is not None:
            if _effect_changed(old, new, 'debt_id'):
                if old.get('debt_id') is not None:
                    self.revert_debt_payment(conn, household_id, old['id'])
                if new.get('debt_id') is not None:
                    self.record_debt_payment(conn, household_id, new)

        # A row without savings_goal_id may still carry allocations to several goals
        if old and _effect_changed(old, new, 'savings_goal_id'):
            self.revert_goal_contribution(conn, household_id, old['id'])
        if new.get('savings_goal_id') is not None and _effect_changed(old, new, 'savings_goal_id'):
            self.record_goal_contribution(conn, household_id, new)

        instance_ids = {old.get('bill_instance_id'), new.get('bill_instance_id')} - {None}
        for instance_id in sorted(instance_ids):
            self.refresh_bill_instance(conn, household_id, instance_id)

    # ==================== BILLS ====================

    def refresh_bill_instance(self, conn, household_id: str, instance_id: int) -> Dict[str, Any]:
        """Re-derive amount paid, remaining and status from the linked transactions."""
        instance = fetch_row(conn, 'bill_instances', household_id, instance_id, "Bill instance")

        paid = conn.execute("""
            SELECT COALESCE(SUM(ABS(amount_cents)), 0)
            FROM transactions
            WHERE bill_instance_id = ? AND household_id = ?
        """, (instance_id, household_id)).fetchone()[0]

        due = instance['due_amount_cents']
        remaining = max(due - paid, 0)
        if remaining == 0:
            status = 'paid'
        elif instance['due_date'] < self.today().isoformat():
            status = 'overdue'
        else:
            status = 'unpaid'
        paid_at = (instance['paid_at'] or now()) if status == 'paid' else None

        values = {
            **money_fields(paid, 'amount_paid'),
            **money_fields(remaining, 'remaining'),
            'status': status,
            'paid_at': paid_at,
            'updated_at': now(),
        }
        update_row(conn, 'bill_instances', household_id, instance_id, values)
        stamp_milestones(conn, household_id, 'bill_instance', instance_id, paid, due)

        if status != instance['status']:
            logger.info(f"Bill instance {instance_id}: {instance['status']} -> {status}")
        return {**instance, **values}

    @retry_on_conflict
    def recompute_bill_instance(self, household_id: str, instance_id: int) -> Dict[str, Any]:
        with self.db.db_connection(commit=True) as conn:
            return self.refresh_bill_instance(conn, household_id, instance_id)

    # ==================== DEBTS ====================

    def record_debt_payment(self, conn, household_id: str, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """Split a linked payment into interest and principal and pay down the debt."""
        debt = fetch_row(conn, 'debts', household_id, transaction['debt_id'], "Debt")
        payment = abs(transaction['amount_cents'])
        principal, interest = split_payment(payment, debt['remaining_balance_cents'], debt)

        insert_row(conn, 'debt_payments', {
            'household_id': household_id,
            'debt_id': debt['id'],
            'transaction_id': transaction['id'],
            'payment_date': transaction['transaction_date'],
            **money_fields(payment, 'amount'),
            **money_fields(principal, 'principal'),
            **money_fields(interest, 'interest'),
            'created_at': now(),
        })

        remaining = debt['remaining_balance_cents'] - principal
        self._set_debt_balance(conn, household_id, debt, remaining)
        logger.info(
            f"Debt {debt['id']} payment from transaction {transaction['id']}: "
            f"principal={principal} interest={interest} remaining={remaining}"
        )
        return {'principal_cents': principal, 'interest_cents': interest, 'remaining_cents': remaining}

    def revert_debt_payment(self, conn, household_id: str, transaction_id: int) -> None:
        """Give the principal of a removed payment back to its debt."""
        payment = conn.execute(
            "SELECT * FROM debt_payments WHERE transaction_id = ? AND household_id = ?",
            (transaction_id, household_id)
        ).fetchone()
        if payment is None:
            return

        debt = fetch_row(conn, 'debts', household_id, payment['debt_id'], "Debt")
        remaining = debt['remaining_balance_cents'] + payment['principal_cents']
        self._set_debt_balance(conn, household_id, debt, remaining)
        conn.execute("DELETE FROM debt_payments WHERE id = ?", (payment['id'],))
        logger.info(f"Reverted debt {debt['id']} payment from transaction {transaction_id}")

    def _set_debt_balance(self, conn, household_id: str, debt: Dict[str, Any], remaining: int) -> None:
        status = 'paid_off' if remaining <= 0 else 'active'
        update_row(conn, 'debts', household_id, debt['id'], {
            **money_fields(remaining, 'remaining_balance'),
            'status': status,
            'updated_at': now(),
        })
        if status != debt['status']:
            logger.info(f"Debt {debt['id']}: {debt['status']} -> {status}")
        self._stamp_debt(conn, household_id, debt, remaining)

    def _stamp_debt(self, conn, household_id: str, debt: Dict[str, Any], remaining: int) -> None:
        paid_down = max(debt['original_amount_cents'] - remaining, 0)
        stamp_milestones(conn, household_id, 'debt', debt['id'], paid_down, debt['original_amount_cents'])

    @retry_on_conflict
    def recompute_debt(self, household_id: str, debt_id: int) -> Dict[str, Any]:
        """
        Re-derive a debt's remaining balance from its starting balance and the
        principal of every recorded payment, then its status and milestones.
        """
        with self.db.db_connection(commit=True) as conn:
            debt = fetch_row(conn, 'debts', household_id, debt_id, "Debt")
            principal = conn.execute(
                "SELECT COALESCE(SUM(principal_cents), 0) FROM debt_payments WHERE debt_id = ? AND household_id = ?",
                (debt_id, household_id)
            ).fetchone()[0]
            remaining = max(debt['starting_balance_cents'] - principal, 0)
            if remaining != debt['remaining_balance_cents']:
                logger.warning(
                    f"Debt {debt_id}: stored balance {debt['remaining_balance_cents']} "
                    f"re-derived as {remaining} cents"
                )
            self._set_debt_balance(conn, household_id, debt, remaining)
            return fetch_row(conn, 'debts', household_id, debt_id, "Debt")

    # ==================== SAVINGS GOALS ====================

    def record_goal_contribution(self, conn, household_id: str, transaction: Dict[str, Any],
                                 goal_id: Optional[int] = None, amount_cents: Optional[int] = None) -> int:
        """
        Add a transaction's contribution to one savings goal.

        By default the whole transaction goes to its savings_goal_id; pass
        goal_id and amount_cents to book one allocation of a transaction that
        is spread over several goals.
        """
        if goal_id is None:
            goal_id = transaction['savings_goal_id']
        goal = fetch_row(conn, 'savings_goals', household_id, goal_id, "Savings goal")
        contribution = abs(transaction['amount_cents']) if amount_cents is None else amount_cents

        insert_row(conn, 'goal_contributions', {
            'household_id': household_id,
            'goal_id': goal['id'],
            'transaction_id': transaction['id'],
            **money_fields(contribution, 'amount'),
            'created_at': now(),
        })
        current = goal['current_amount_cents'] + contribution
        self._set_goal_amount(conn, household_id, goal, current)
        logger.info(f"Goal {goal['id']} +{contribution} cents from transaction {transaction['id']}")
        return current

    def record_goal_allocations(self, conn, household_id: str, transaction: Dict[str, Any],
                                allocations: List[Dict[str, Any]]) -> None:
        """Book resolved allocations (see validate_goal_allocations) against their goals."""
        for allocation in allocations:
            self.record_goal_contribution(conn, household_id, transaction,
                                          allocation['savings_goal_id'], allocation['amount_cents'])

    def revert_goal_contribution(self, conn, household_id: str, transaction_id: int) -> None:
        """Take back every goal contribution a transaction made."""
        contributions = conn.execute(
            "SELECT * FROM goal_contributions WHERE transaction_id = ? AND household_id = ? ORDER BY id",
            (transaction_id, household_id)
        ).fetchall()

        for contribution in contributions:
            goal = fetch_row(conn, 'savings_goals', household_id, contribution['goal_id'], "Savings goal")
            current = max(goal['current_amount_cents'] - contribution['amount_cents'], 0)
            self._set_goal_amount(conn, household_id, goal, current)
            conn.execute("DELETE FROM goal_contributions WHERE id = ?", (contribution['id'],))
            logger.info(f"Reverted goal {goal['id']} contribution from transaction {transaction_id}")

    def _set_goal_amount(self, conn, household_id: str, goal: Dict[str, Any], current: int) -> None:
        status = 'completed' if current >= goal['target_amount_cents'] else 'active'
        update_row(conn, 'savings_goals', household_id, goal['id'], {
            **money_fields(current, 'current_amount'),
            'status': status,
            'updated_at': now(),
        })
        stamp_milestones(conn, household_id, 'savings_goal', goal['id'], current, goal['target_amount_cents'])

    @retry_on_conflict
    def recompute_goal(self, household_id: str, goal_id: int) -> Dict[str, Any]:
        """Re-derive a goal's current amount from its recorded contributions."""
        with self.db.db_connection(commit=True) as conn:
            goal = fetch_row(conn, 'savings_goals', household_id, goal_id, "Savings goal")
            total = conn.execute(
                "SELECT COALESCE(SUM(amount_cents), 0) FROM goal_contributions WHERE goal_id = ? AND household_id = ?",
                (goal_id, household_id)
            ).fetchone()[0]
            self._set_goal_amount(conn, household_id, goal, total)
            return fetch_row(conn, 'savings_goals', household_id, goal_id, "Savings goal")


def _effect_changed(old: Dict[str, Any], new: Dict[str, Any], link: str) -> bool:
    """False when an update leaves the link, amount and date of a row untouched."""
    if not old or not new:
        return True
    return (
        old.get(link) != new.get(link)
        or old['amount_cents'] != new['amount_cents']
        or old['transaction_date'] != new['transaction_date']
    )
