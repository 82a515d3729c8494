#!/usr/bin/env python3
"""
Convert single-row 'transfer' transactions into transfer pairs.
Rows without a resolvable destination account become expenses.
"""
import argparse
import logging
import os

from homeledger.database import LedgerDatabase
from homeledger.transfers import TransferService


def migrate(db_path: str, household_id: str = None):
    db = LedgerDatabase(db_path=db_path)
    service = TransferService(db)

    households = [household_id] if household_id else db.get_household_ids()
    for household in households:
        result = service.migrate_legacy_transfers(household)
        print(f"{household:12} | migrated: {result['migrated']:5} | converted to expense: {result['degraded']:5}")


def main():
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description='Migrate legacy single-row transfers to transfer pairs')
    parser.add_argument('--db-path',
                        default=os.getenv('DATABASE_PATH', 'data/ledger.db'),
                        help='Path to database file')
    parser.add_argument('--household',
                        help='Only migrate this household')

    args = parser.parse_args()
    migrate(args.db_path, args.household)


if __name__ == '__main__':
    main()
