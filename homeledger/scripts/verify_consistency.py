#!/usr/bin/env python3
"""
Check stored money data for drift, broken transfer pairs, bad splits and
account balances that no longer match their transactions.
Read-only: exits with status 1 when anything is found.
"""
import argparse
import logging
import os
import sys

from homeledger.database import LedgerDatabase
from homeledger.verifier import ConsistencyVerifier


def verify(db_path: str, household_id: str = None) -> int:
    """
    Print every violation found and return how many there were.

    Args:
        db_path: Path to the database file
        household_id: Only check this household (default: all)
    """
    db = LedgerDatabase(db_path=db_path)
    verifier = ConsistencyVerifier(db)

    households = [household_id] if household_id else db.get_household_ids()

    print('Ledger Consistency Check')
    print('=' * 100)

    total = 0
    for household in households:
        violations, drifted = verifier.audit(household)
        total += len(violations) + len(drifted)

        for violation in violations:
            print(f"✗ {household:12} | {violation.kind:26} | {violation.table}:{violation.row_id} | {violation.detail}")
        for account in drifted:
            print(f"✗ {household:12} | {'balance_drift':26} | accounts:{account['account_id']} | "
                  f"stored {account['balance_cents']} expected {account['expected_cents']} cents")
        if not violations and not drifted:
            print(f"✓ {household:12} | consistent")

    print('=' * 100)
    if total:
        print(f"\nFound {total} problem(s) in {len(households)} household(s).")
    else:
        print(f"\n✓ All {len(households)} household(s) are consistent!")
    return total


def main():
    logging.basicConfig(level=logging.WARNING)

    parser = argparse.ArgumentParser(description='Check ledger consistency')
    parser.add_argument('--db-path',
                        default=os.getenv('DATABASE_PATH', 'data/ledger.db'),
                        help='Path to database file')
    parser.add_argument('--household',
                        help='Only check this household')

    args = parser.parse_args()
    sys.exit(1 if verify(args.db_path, args.household) else 0)


if __name__ == '__main__':
    main()
