#!/usr/bin/env python3
"""
Recalculate account balances from the transaction ledger.
This script fixes balance mismatches; every correction is written to repair_log.
"""
import argparse
import getpass
import logging
import os

from homeledger.database import LedgerDatabase
from homeledger.ledger import AccountLedger
from homeledger.money import format_amount


def recalculate_all_balances(db_path: str, household_id: str = None, actor: str = None, dry_run: bool = False):
    """
    Recalculate balances as opening balance plus the sum of transactions.

    Args:
        db_path: Path to the database file
        household_id: Only repair this household (default: all)
        actor: Name recorded in repair_log
        dry_run: If True, only show what would be changed without updating
    """
    db = LedgerDatabase(db_path=db_path)
    ledger = AccountLedger(db)
    actor = actor or f"script:{getpass.getuser()}"

    print('Account Balance Recalculation')
    print('=' * 100)

    households = [household_id] if household_id else db.get_household_ids()
    changed = 0
    for household in households:
        result = ledger.recalculate_balances(household, actor=actor, dry_run=dry_run)
        for change in result['changes']:
            diff = change['new_balance_cents'] - change['old_balance_cents']
            print(f"{'✗ NEEDS UPDATE':15} | {household:12} | {change['name']:25} | "
                  f"Stored: {format_amount(change['old_balance_cents']):>14} | "
                  f"Calculated: {format_amount(change['new_balance_cents']):>14} | "
                  f"Diff: {format_amount(diff):>14}")
        changed += len(result['changes'])

    print('=' * 100)

    if not changed:
        print("\n✓ All account balances are correct!")
    elif dry_run:
        print(f"\nFound {changed} accounts with balance mismatches.")
        print("\n[DRY RUN] No changes will be made. Run without --dry-run to apply fixes.")
    else:
        print(f"\n✓ Successfully updated {changed} account balances!")
    return changed


def main():
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description='Recalculate account balances from transactions')
    parser.add_argument('--db-path',
                        default=os.getenv('DATABASE_PATH', 'data/ledger.db'),
                        help='Path to database file')
    parser.add_argument('--household',
                        help='Only repair this household')
    parser.add_argument('--actor',
                        help='Name recorded in the repair log')
    parser.add_argument('--dry-run',
                        action='store_true',
                        help='Show what would be changed without updating')

    args = parser.parse_args()
    recalculate_all_balances(args.db_path, args.household, args.actor, args.dry_run)


if __name__ == '__main__':
    main()
