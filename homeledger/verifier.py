"""
Home Ledger - Consistency verifier

Read-only audit of stored money data. It reports violations and never
changes anything; repair_money_drift() is the separate, explicit operation
that rewrites drifted decimal columns and logs each change in repair_log.
"""
import logging
from typing import Any, Dict, List, NamedTuple, Tuple

from homeledger.database import (
    LedgerDatabase,
    MONEY_COLUMNS,
    TRANSFER_TYPES,
    retry_on_conflict,
    rows,
    write_repair_log,
)
from homeledger.exceptions import ConsistencyViolation
from homeledger.ledger import balance_drift
from homeledger.money import to_float

logger = logging.getLogger(__name__)

EPSILON = 1e-6


class Violation(NamedTuple):
    table: str
    row_id: Any
    kind: str
    detail: str = ''


def _drifted(decimal_value, cents) -> bool:
    if decimal_value is None and cents is None:
        return False
    if decimal_value is None or cents is None:
        return True
    return abs(decimal_value - cents / 100) >= EPSILON


class ConsistencyVerifier:
    """Scan a household for money drift, broken transfer pairs and bad splits."""

    def __init__(self, db: LedgerDatabase):
        self.db = db

    def verify(self, household_id: str) -> List[Violation]:
        """
        Run every check for one household.

        All checks read the same committed snapshot, so a write that commits
        while the scan is running is either seen completely or not at all.

        Returns:
            List of Violation(table, row_id, kind, detail); empty when consistent
        """
        with self.db.db_connection(commit=False) as conn:
            violations = self._scan(conn, household_id)

        self._log_result(household_id, violations)
        return violations

    def audit(self, household_id: str) -> Tuple[List[Violation], List[Dict[str, Any]]]:
        """
        verify() plus account balance drift, read from one snapshot.

        Returns:
            (violations, drifted accounts as returned by balance_drift())
        """
        with self.db.db_connection(commit=False) as conn:
            violations = self._scan(conn, household_id)
            drifted = balance_drift(conn, household_id)

        self._log_result(household_id, violations)
        if drifted:
            logger.warning(f"{len(drifted)} account balance(s) drifted in household {household_id}")
        return violations, drifted

    def _scan(self, conn, household_id: str) -> List[Violation]:
        return (
            self._check_money_drift(conn, household_id)
            + self._check_transfers(conn, household_id)
            + self._check_splits(conn, household_id)
        )

    @staticmethod
    def _log_result(household_id: str, violations: List[Violation]) -> None:
        if violations:
            logger.warning(f"Household {household_id}: {len(violations)} consistency violation(s)")
        else:
            logger.info(f"Household {household_id}: no consistency violations")

    def verify_all(self) -> Dict[str, List[Violation]]:
        """Run verify() for every household."""
        return {household_id: self.verify(household_id) for household_id in self.db.get_household_ids()}

    def assert_consistent(self, household_id: str) -> None:
        """
        Raises:
            ConsistencyViolation: If verify() finds anything
        """
        violations = self.verify(household_id)
        if violations:
            raise ConsistencyViolation(violations)

    def _check_money_drift(self, conn, household_id: str) -> List[Violation]:
        violations = []
        for table, columns in MONEY_COLUMNS.items():
            selected = ", ".join(f"{column}, {column}_cents" for column in columns)
            for row in rows(conn, f"SELECT id, {selected} FROM {table} WHERE household_id = ?", (household_id,)):
                for column in columns:
                    decimal_value, cents = row[column], row[f"{column}_cents"]
                    if _drifted(decimal_value, cents):
                        violations.append(Violation(
                            table, row['id'], 'money_drift',
                            f"{column}={decimal_value} but {column}_cents={cents}"
                        ))
        return violations

    def _check_transfers(self, conn, household_id: str) -> List[Violation]:
        violations = []
        legs = {
            row['id']: row for row in rows(conn, f"""
                SELECT * FROM transactions
                WHERE household_id = ? AND transaction_type IN {TRANSFER_TYPES}
            """, (household_id,))
        }
        referenced = set()

        for transfer in rows(conn, "SELECT * FROM transfers WHERE household_id = ?", (household_id,)):
            referenced.update((transfer['from_transaction_id'], transfer['to_transaction_id']))
            out_leg = legs.get(transfer['from_transaction_id'])
            in_leg = legs.get(transfer['to_transaction_id'])

            if out_leg is None and in_leg is None:
                violations.append(Violation('transfers', transfer['id'], 'transfer_missing_legs',
                                            "neither leg exists"))
                continue
            if out_leg is None or in_leg is None:
                survivor = out_leg or in_leg
                violations.append(Violation('transactions', survivor['id'], 'orphaned_transfer_leg',
                                            f"the other leg of transfer {transfer['id']} is missing"))
                continue

            if out_leg['transfer_id'] != transfer['id'] or in_leg['transfer_id'] != transfer['id']:
                violations.append(Violation('transfers', transfer['id'], 'transfer_id_mismatch',
                                            "legs do not carry the transfer id"))
            if out_leg['transaction_type'] != 'transfer_out' or in_leg['transaction_type'] != 'transfer_in':
                violations.append(Violation('transfers', transfer['id'], 'transfer_leg_type',
                                            "legs are not transfer_out/transfer_in"))
            if not out_leg['amount_cents'] < 0 < in_leg['amount_cents']:
                violations.append(Violation('transfers', transfer['id'], 'transfer_sign',
                                            f"out={out_leg['amount_cents']} in={in_leg['amount_cents']}"))
            if (out_leg['account_id'] != transfer['from_account_id']
                    or in_leg['account_id'] != transfer['to_account_id']):
                violations.append(Violation('transfers', transfer['id'], 'transfer_account_mismatch',
                                            "legs are booked on other accounts than the record"))

            source, destination = abs(out_leg['amount_cents']), abs(in_leg['amount_cents'])
            if source != destination + transfer['fees_cents'] or destination != transfer['amount_cents']:
                violations.append(Violation(
                    'transfers', transfer['id'], 'transfer_amount_mismatch',
                    f"source={source} destination={destination} "
                    f"amount={transfer['amount_cents']} fee={transfer['fees_cents']}"
                ))

        for leg_id, leg in legs.items():
            if leg_id not in referenced:
                violations.append(Violation('transactions', leg_id, 'orphaned_transfer_leg',
                                            f"no transfer record for transfer_id {leg['transfer_id']}"))
        return violations

    def _check_splits(self, conn, household_id: str) -> List[Violation]:
        mismatched = rows(conn, """
            SELECT t.id, t.amount_cents, SUM(s.amount_cents) AS split_total
            FROM transactions t
            JOIN transaction_splits s ON s.transaction_id = t.id
            WHERE t.household_id = ?
            GROUP BY t.id
            HAVING SUM(s.amount_cents) != t.amount_cents
        """, (household_id,))
        return [
            Violation('transactions', row['id'], 'split_sum_mismatch',
                      f"splits total {row['split_total']} but amount is {row['amount_cents']}")
            for row in mismatched
        ]

    @retry_on_conflict
    def repair_money_drift(self, household_id: str, actor: str) -> int:
        """
        Rewrite drifted decimal columns from their cents columns.

        Rows whose cents column is NULL cannot be derived and are left for a
        person to fix.

        Returns:
            Number of columns rewritten
        """
        repaired = 0
        with self.db.db_connection(commit=True) as conn:
            for table, columns in MONEY_COLUMNS.items():
                selected = ", ".join(f"{column}, {column}_cents" for column in columns)
                for row in rows(conn, f"SELECT id, {selected} FROM {table} WHERE household_id = ?", (household_id,)):
                    for column in columns:
                        decimal_value, cents = row[column], row[f"{column}_cents"]
                        if not _drifted(decimal_value, cents):
                            continue
                        if cents is None:
                            logger.warning(f"{table} {row['id']}: {column}_cents is NULL, cannot repair")
                            continue

                        conn.execute(
                            f"UPDATE {table} SET {column} = ? WHERE id = ? AND household_id = ?",
                            (to_float(cents), row['id'], household_id)
                        )
                        write_repair_log(conn, household_id, table, row['id'], 'repair_money_drift',
                                         {column: decimal_value}, {column: to_float(cents)}, actor)
                        repaired += 1

        logger.info(f"Repaired {repaired} drifted money column(s) in household {household_id}")
        return repaired
