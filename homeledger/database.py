"""
Home Ledger - Database Layer
Handles all database operations using SQLite
"""
import sqlite3
import logging
import math
import os
import time
import json
from contextlib import contextmanager
from datetime import date, datetime
from functools import wraps
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable

from dateutil.relativedelta import relativedelta

from homeledger.exceptions import (
    LedgerError,
    NotFoundError,
    ValidationError,
    ConcurrencyConflict,
    DatabaseError,
    DatabaseConnectionError,
    DatabaseIntegrityError,
)
from homeledger.money import money_fields, to_minor_units
from homeledger.validators import require_amount, require_date, validate_required_fields, validate_date_range

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.getenv("DATABASE_PATH", "data/ledger.db")
DB_TIMEOUT = float(os.getenv("DATABASE_TIMEOUT", "10.0"))
MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "3"))
RETRY_BACKOFF_SECONDS = 0.05

ACCOUNT_TYPES = ('checking', 'savings', 'credit', 'line_of_credit', 'investment', 'cash')
CREDIT_ACCOUNT_TYPES = ('credit', 'line_of_credit')
TRANSACTION_TYPES = ('income', 'expense', 'transfer_out', 'transfer_in')
TRANSFER_TYPES = ('transfer_out', 'transfer_in')
LEGACY_TRANSFER_TYPE = 'transfer'
MILESTONE_ENTITY_TYPES = ('bill_instance', 'debt', 'savings_goal')

# Every REAL money column and its authoritative *_cents sibling
MONEY_COLUMNS = {
    'accounts': ('opening_balance', 'balance', 'credit_limit'),
    'transactions': ('amount',),
    'transaction_splits': ('amount',),
    'transfers': ('amount', 'fees'),
    'bills': ('default_amount',),
    'bill_instances': ('due_amount', 'amount_paid', 'remaining'),
    'debts': ('original_amount', 'starting_balance', 'remaining_balance', 'minimum_payment'),
    'debt_payments': ('amount', 'principal', 'interest'),
    'savings_goals': ('target_amount', 'current_amount'),
    'goal_contributions': ('amount',),
    'milestones': ('threshold_amount',),
}

GOAL_CONTRIBUTIONS_TABLE = """
    CREATE TABLE IF NOT EXISTS {name} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        household_id TEXT NOT NULL,
        goal_id INTEGER NOT NULL REFERENCES savings_goals(id),
        transaction_id INTEGER NOT NULL,
        amount REAL NOT NULL,
        amount_cents INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(transaction_id, goal_id)
    )
"""


def now() -> str:
    return datetime.now().isoformat()


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return 'locked' in message or 'busy' in message


def retry_on_conflict(func):
    """
    Re-run a write operation when the database write lock is contended.

    The wrapped function must open its own atomic unit so every attempt
    starts from committed state. After MAX_RETRIES attempts the
    ConcurrencyConflict is raised to the caller, who may retry later.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return func(*args, **kwargs)
            except ConcurrencyConflict:
                if attempt == MAX_RETRIES:
                    logger.error(f"{func.__name__} gave up after {attempt} attempts: write lock contended")
                    raise
                logger.warning(f"{func.__name__} hit a write conflict, retrying ({attempt}/{MAX_RETRIES})")
                time.sleep(RETRY_BACKOFF_SECONDS * attempt)
    return wrapper


# ==================== ROW HELPERS ====================
# These run on an open connection so callers can compose them inside one
# atomic unit. Table and column names always come from this package, never
# from user input.

def fetch_row(conn, table: str, household_id: str, row_id: Any, label: str = None) -> Dict[str, Any]:
    """
    Load one row scoped to a household.

    Raises:
        NotFoundError: If the row does not exist or belongs to another household
    """
    cursor = conn.execute(
        f"SELECT * FROM {table} WHERE id = ? AND household_id = ?",
        (row_id, household_id)
    )
    row = cursor.fetchone()
    if row is None:
        label = label or table.rstrip('s').replace('_', ' ').capitalize()
        raise NotFoundError(f"{label} {row_id} not found")
    return dict(row)


def rows(conn, query: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
    return [dict(row) for row in conn.execute(query, tuple(params)).fetchall()]


def insert_row(conn, table: str, values: Dict[str, Any]) -> int:
    columns = ", ".join(values.keys())
    placeholders = ", ".join("?" for _ in values)
    cursor = conn.execute(
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
        list(values.values())
    )
    return cursor.lastrowid


def update_row(conn, table: str, household_id: str, row_id: Any, values: Dict[str, Any]) -> bool:
    if not values:
        return False
    set_clause = ", ".join(f"{key} = ?" for key in values.keys())
    cursor = conn.execute(
        f"UPDATE {table} SET {set_clause} WHERE id = ? AND household_id = ?",
        list(values.values()) + [row_id, household_id]
    )
    return cursor.rowcount > 0


def _check_debt_terms(debt_data: Dict[str, Any]) -> None:
    for field, choices in (
        ('interest_type', ('fixed', 'variable', 'none')),
        ('loan_type', ('revolving', 'installment')),
        ('compounding_frequency', ('daily', 'monthly', 'quarterly', 'annually')),
    ):
        value = debt_data.get(field)
        if value is not None and value not in choices:
            raise ValidationError(f"Invalid {field.replace('_', ' ')}: {value}")
    if debt_data.get('billing_cycle_days') is not None and int(debt_data['billing_cycle_days']) < 1:
        raise ValidationError("Billing cycle days must be at least 1")


def write_repair_log(conn, household_id: str, table: str, row_id: Any, action: str,
                     before: Dict[str, Any], after: Dict[str, Any], actor: str) -> int:
    """Record an explicit repair write."""
    return insert_row(conn, 'repair_log', {
        'household_id': household_id,
        'table_name': table,
        'row_id': str(row_id),
        'action': action,
        'before_value': json.dumps(before, sort_keys=True),
        'after_value': json.dumps(after, sort_keys=True),
        'actor': actor,
        'created_at': now(),
    })


# ==================== GENERIC CRUD CLASS ====================
class SimpleCRUD:
    """
    Generic CRUD operations for simple name-based, household-scoped tables.

    Usage:
        category_crud = SimpleCRUD(db, 'categories', {'transactions': 'category_id'})
        categories = category_crud.get_all(household_id)
        category_id = category_crud.add(household_id, 'Groceries')
        success = category_crud.delete(household_id, category_id)
    """

    def __init__(self, db_instance, table_name: str, foreign_key_checks: Dict[str, str] = None):
        """
        Initialize CRUD helper for a specific table.

        Args:
            db_instance: Reference to LedgerDatabase instance
            table_name: Name of the database table
            foreign_key_checks: Dict of {table: column} to check before delete
        """
        self.db = db_instance
        self.table = table_name
        self.fk_checks = foreign_key_checks or {}

    def get_all(self, household_id: str) -> List[Dict[str, Any]]:
        """Get all records of a household, ordered by name."""
        with self.db.db_connection(commit=False) as conn:
            cursor = conn.execute(
                f"SELECT * FROM {self.table} WHERE household_id = ? ORDER BY name",
                (household_id,)
            )
            rows = cursor.fetchall()
            logger.debug(f"Retrieved {len(rows)} records from {self.table}")
            return [dict(row) for row in rows]

    def add(self, household_id: str, name: str, **extra) -> int:
        """
        Add a new record.

        Raises:
            ValidationError: If the name is empty
            DatabaseIntegrityError: If name already exists in the household
        """
        if not name or not name.strip():
            raise ValidationError(f"{self.table.capitalize()} name is required")
        try:
            with self.db.db_connection(commit=True) as conn:
                item_id = insert_row(conn, self.table, {'household_id': household_id, 'name': name.strip(), **extra})
                logger.info(f"Added {self.table}: {name} (ID: {item_id})")
                return item_id
        except DatabaseIntegrityError as e:
            logger.error(f"{self.table.capitalize()} creation failed - duplicate name: {name}")
            raise DatabaseIntegrityError(f"{self.table.capitalize()} '{name}' already exists") from e

    def delete(self, household_id: str, item_id: int) -> bool:
        """
        Delete a record that nothing references.

        Raises:
            ValidationError: If the record is still referenced
        """
        with self.db.db_connection(commit=True) as conn:
            for table, column in self.fk_checks.items():
                cursor = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE {column} = ? AND household_id = ?",
                    (item_id, household_id)
                )
                count = cursor.fetchone()[0]
                if count > 0:
                    raise ValidationError(f"Cannot delete: {count} {table} still reference it")

            cursor = conn.execute(
                f"DELETE FROM {self.table} WHERE id = ? AND household_id = ?",
                (item_id, household_id)
            )
            success = cursor.rowcount > 0
            if success:
                logger.info(f"Deleted {self.table} {item_id}")
            else:
                logger.warning(f"{self.table.capitalize()} {item_id} not found")
            return success


class LedgerDatabase:
    """Handle all database operations for Home Ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize database and create the schema if needed."""
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._init_database()

        self._category_crud = SimpleCRUD(
            self, 'categories',
            {'transactions': 'category_id', 'transaction_splits': 'category_id'}
        )

        logger.info(f"Database initialized at {db_path}")

    def _get_connection(self):
        """Get database connection. Transactions are managed explicitly."""
        conn = sqlite3.connect(self.db_path, timeout=DB_TIMEOUT, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def db_connection(self, commit: bool = True):
        """
        Context manager for database connections with automatic cleanup and error handling.

        With commit=True the block is one atomic unit: BEGIN IMMEDIATE takes
        the write lock up front, so concurrent writers are serialized and
        every read inside the block sees the latest committed state. Any
        exception rolls the whole unit back.

        With commit=False the block is a read transaction: every query in it
        sees the same committed snapshot, taken at its first read.

        Usage:
            with self.db_connection() as conn:
                conn.execute("UPDATE accounts SET ...")

        Args:
            commit: Whether to run the block as a write transaction (default True)

        Yields:
            sqlite3.Connection: Database connection

        Raises:
            ConcurrencyConflict: If the write lock could not be acquired in time
            DatabaseConnectionError: If connection fails
            DatabaseIntegrityError: If a constraint is violated
            DatabaseError: If query execution fails
        """
        conn = None
        try:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE" if commit else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except LedgerError:
            self._rollback(conn)
            raise
        except sqlite3.OperationalError as e:
            self._rollback(conn)
            if _is_lock_error(e):
                logger.warning(f"Database write lock contended: {e}")
                raise ConcurrencyConflict(f"Database is busy, retry the operation: {e}") from e
            logger.error(f"Database operational error: {e}")
            raise DatabaseConnectionError(f"Database connection failed: {e}") from e
        except sqlite3.IntegrityError as e:
            self._rollback(conn)
            logger.error(f"Database integrity error: {e}")
            raise DatabaseIntegrityError(f"Data integrity violation: {e}") from e
        except Exception as e:
            self._rollback(conn)
            logger.error(f"Database error: {e}")
            raise DatabaseError(f"Database operation failed: {e}") from e
        finally:
            if conn:
                conn.close()

    @staticmethod
    def _rollback(conn) -> None:
        if conn is not None and conn.in_transaction:
            conn.execute("ROLLBACK")

    def _safe_update(
        self,
        table: str,
        household_id: str,
        item_id: Any,
        updates: Dict[str, Any],
        allowed_columns: set
    ) -> bool:
        """
        Perform a safe update with column whitelisting to prevent SQL injection.

        Raises:
            ValidationError: If invalid column names are provided
        """
        invalid_keys = set(updates.keys()) - allowed_columns
        if invalid_keys:
            raise ValidationError(f"Invalid columns for {table} update: {sorted(invalid_keys)}")

        if not updates:
            raise ValidationError(f"No valid updates provided for {table}")

        with self.db_connection(commit=True) as conn:
            success = update_row(conn, table, household_id, item_id, {**updates, 'updated_at': now()})
            if success:
                logger.info(f"Updated {table} {item_id}: {list(updates.keys())}")
            else:
                logger.warning(f"{table.capitalize()} {item_id} not found for update")
            return success

    def _init_database(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()
        # Readers keep a stable snapshot while writers commit
        conn.execute("PRAGMA journal_mode=WAL")
        cursor = conn.cursor()

        # Accounts table
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                name TEXT NOT NULL,
                account_type TEXT NOT NULL DEFAULT 'checking'
                    CHECK(account_type IN {ACCOUNT_TYPES}),
                currency TEXT NOT NULL DEFAULT 'EUR',
                opening_balance REAL NOT NULL DEFAULT 0,
                opening_balance_cents INTEGER NOT NULL DEFAULT 0,
                balance REAL NOT NULL DEFAULT 0,
                balance_cents INTEGER NOT NULL DEFAULT 0,
                credit_limit REAL,
                credit_limit_cents INTEGER,
                is_active BOOLEAN DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        # Categories table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                name TEXT NOT NULL,
                category_type TEXT NOT NULL DEFAULT 'expense'
                    CHECK(category_type IN ('income', 'expense')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(household_id, name)
            )
        """)

        # Bills table (templates)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS bills (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                name TEXT NOT NULL,
                default_amount REAL NOT NULL,
                default_amount_cents INTEGER NOT NULL,
                due_day INTEGER CHECK(due_day BETWEEN 1 AND 31),
                account_id INTEGER REFERENCES accounts(id),
                is_active BOOLEAN DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        # Bill instances table (one row per due occurrence)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS bill_instances (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                bill_id INTEGER NOT NULL REFERENCES bills(id),
                due_date DATE NOT NULL,
                due_amount REAL NOT NULL,
                due_amount_cents INTEGER NOT NULL,
                amount_paid REAL NOT NULL DEFAULT 0,
                amount_paid_cents INTEGER NOT NULL DEFAULT 0,
                remaining REAL NOT NULL,
                remaining_cents INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'unpaid'
                    CHECK(status IN ('unpaid', 'overdue', 'paid')),
                paid_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP,
                UNIQUE(bill_id, due_date)
            )
        """)

        # Debts table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS debts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                name TEXT NOT NULL,
                creditor TEXT,
                original_amount REAL NOT NULL,
                original_amount_cents INTEGER NOT NULL,
                starting_balance REAL NOT NULL DEFAULT 0,
                starting_balance_cents INTEGER NOT NULL DEFAULT 0,
                remaining_balance REAL NOT NULL,
                remaining_balance_cents INTEGER NOT NULL,
                interest_rate REAL NOT NULL DEFAULT 0,
                interest_type TEXT NOT NULL DEFAULT 'fixed'
                    CHECK(interest_type IN ('fixed', 'variable', 'none')),
                loan_type TEXT NOT NULL DEFAULT 'installment'
                    CHECK(loan_type IN ('revolving', 'installment')),
                compounding_frequency TEXT NOT NULL DEFAULT 'monthly'
                    CHECK(compounding_frequency IN ('daily', 'monthly', 'quarterly', 'annually')),
                billing_cycle_days INTEGER NOT NULL DEFAULT 30,
                minimum_payment REAL,
                minimum_payment_cents INTEGER,
                account_id INTEGER REFERENCES accounts(id),
                start_date DATE,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK(status IN ('active', 'paid_off')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        # Savings goals table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS savings_goals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                name TEXT NOT NULL,
                target_amount REAL NOT NULL,
                target_amount_cents INTEGER NOT NULL,
                current_amount REAL NOT NULL DEFAULT 0,
                current_amount_cents INTEGER NOT NULL DEFAULT 0,
                target_date DATE,
                account_id INTEGER REFERENCES accounts(id),
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK(status IN ('active', 'completed')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        # Transactions table
        # paired_transaction_id and transfer_id are not foreign keys: legs
        # are removed one after the other inside a unit, and a missing leg
        # must stay detectable by the verifier.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                account_id INTEGER NOT NULL REFERENCES accounts(id),
                transaction_date DATE NOT NULL,
                amount REAL NOT NULL,
                amount_cents INTEGER NOT NULL,
                transaction_type TEXT NOT NULL
                    CHECK(transaction_type IN ('income', 'expense', 'transfer_out', 'transfer_in', 'transfer')),
                description TEXT DEFAULT '',
                notes TEXT,
                category_id INTEGER REFERENCES categories(id),
                bill_instance_id INTEGER REFERENCES bill_instances(id),
                debt_id INTEGER REFERENCES debts(id),
                savings_goal_id INTEGER REFERENCES savings_goals(id),
                transfer_id TEXT,
                paired_transaction_id INTEGER,
                transfer_account_id INTEGER,
                is_split BOOLEAN DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        # Transaction splits table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transaction_splits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                transaction_id INTEGER NOT NULL REFERENCES transactions(id) ON DELETE CASCADE,
                category_id INTEGER REFERENCES categories(id),
                amount REAL NOT NULL,
                amount_cents INTEGER NOT NULL,
                percentage REAL,
                description TEXT DEFAULT '',
                sort_order INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Transfers table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transfers (
                id TEXT PRIMARY KEY,
                household_id TEXT NOT NULL,
                from_account_id INTEGER NOT NULL REFERENCES accounts(id),
                to_account_id INTEGER NOT NULL REFERENCES accounts(id),
                amount REAL NOT NULL,
                amount_cents INTEGER NOT NULL,
                fees REAL NOT NULL DEFAULT 0,
                fees_cents INTEGER NOT NULL DEFAULT 0,
                transfer_date DATE NOT NULL,
                description TEXT DEFAULT '',
                notes TEXT,
                status TEXT NOT NULL DEFAULT 'completed'
                    CHECK(status IN ('pending', 'completed')),
                from_transaction_id INTEGER,
                to_transaction_id INTEGER,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        # Debt payments table (principal/interest split per linked transaction)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS debt_payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                debt_id INTEGER NOT NULL REFERENCES debts(id),
                transaction_id INTEGER NOT NULL UNIQUE,
                payment_date DATE NOT NULL,
                amount REAL NOT NULL,
                amount_cents INTEGER NOT NULL,
                principal REAL NOT NULL,
                principal_cents INTEGER NOT NULL,
                interest REAL NOT NULL,
                interest_cents INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Goal contributions table (one row per transaction and goal)
        cursor.execute(GOAL_CONTRIBUTIONS_TABLE.format(name="goal_contributions"))

        # Milestones table (append-only achievement history)
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS milestones (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                entity_type TEXT NOT NULL CHECK(entity_type IN {MILESTONE_ENTITY_TYPES}),
                entity_id INTEGER NOT NULL,
                percentage INTEGER NOT NULL,
                threshold_amount REAL NOT NULL,
                threshold_amount_cents INTEGER NOT NULL,
                achieved_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(entity_type, entity_id, percentage)
            )
        """)

        # Repair log table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS repair_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                household_id TEXT NOT NULL,
                table_name TEXT NOT NULL,
                row_id TEXT NOT NULL,
                action TEXT NOT NULL,
                before_value TEXT,
                after_value TEXT,
                actor TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_account ON transactions(household_id, account_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_transfer ON transactions(transfer_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_bill ON transactions(bill_instance_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_splits_transaction ON transaction_splits(transaction_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_milestones_entity ON milestones(entity_type, entity_id)")

        self._migrate_debt_starting_balance(cursor)
        self._migrate_goal_contributions(cursor)

        conn.close()

    @staticmethod
    def _migrate_debt_starting_balance(cursor) -> None:
        """Debts created before starting_balance existed get it back from their payments."""
        columns = {row["name"] for row in cursor.execute("PRAGMA table_info(debts)").fetchall()}
        if "starting_balance_cents" in columns:
            return

        cursor.execute("ALTER TABLE debts ADD COLUMN starting_balance REAL NOT NULL DEFAULT 0")
        cursor.execute("ALTER TABLE debts ADD COLUMN starting_balance_cents INTEGER NOT NULL DEFAULT 0")
        cursor.execute("""
            UPDATE debts
            SET starting_balance_cents = remaining_balance_cents + COALESCE(
                (SELECT SUM(principal_cents) FROM debt_payments WHERE debt_payments.debt_id = debts.id), 0
            )
        """)
        cursor.execute("UPDATE debts SET starting_balance = starting_balance_cents / 100.0")
        logger.info("Added starting_balance to debts")

    @staticmethod
    def _migrate_goal_contributions(cursor) -> None:
        """Rebuild goal_contributions created with one contribution per transaction."""
        table_sql = cursor.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = 'goal_contributions'"
        ).fetchone()[0]
        if "UNIQUE(transaction_id, goal_id)" in table_sql:
            return

        cursor.execute("BEGIN IMMEDIATE")
        cursor.execute(GOAL_CONTRIBUTIONS_TABLE.format(name="goal_contributions_new"))
        cursor.execute("""
            INSERT INTO goal_contributions_new
                (id, household_id, goal_id, transaction_id, amount, amount_cents, created_at)
            SELECT id, household_id, goal_id, transaction_id, amount, amount_cents, created_at
            FROM goal_contributions
        """)
        cursor.execute("DROP TABLE goal_contributions")
        cursor.execute("ALTER TABLE goal_contributions_new RENAME TO goal_contributions")
        cursor.execute("COMMIT")
        logger.info("Rebuilt goal_contributions for multi-goal contributions")

    def get_household_ids(self) -> List[str]:
        """Every household that owns at least one account."""
        with self.db_connection(commit=False) as conn:
            cursor = conn.execute("SELECT DISTINCT household_id FROM accounts ORDER BY household_id")
            return [row['household_id'] for row in cursor.fetchall()]

    # ==================== CATEGORIES ====================

    def get_categories(self, household_id: str) -> List[Dict[str, Any]]:
        return self._category_crud.get_all(household_id)

    def add_category(self, household_id: str, name: str, category_type: str = 'expense') -> int:
        if category_type not in ('income', 'expense'):
            raise ValidationError(f"Invalid category type: {category_type}")
        return self._category_crud.add(household_id, name, category_type=category_type)

    def delete_category(self, household_id: str, category_id: int) -> bool:
        return self._category_crud.delete(household_id, category_id)

    # ==================== ACCOUNTS ====================

    def get_accounts(self, household_id: str, include_inactive: bool = False) -> List[Dict[str, Any]]:
        """Get all accounts of a household."""
        query = "SELECT * FROM accounts WHERE household_id = ?"
        if not include_inactive:
            query += " AND is_active = 1"
        query += " ORDER BY name"

        with self.db_connection(commit=False) as conn:
            return [dict(row) for row in conn.execute(query, (household_id,)).fetchall()]

    def get_account(self, household_id: str, account_id: int) -> Optional[Dict[str, Any]]:
        """Get a specific account."""
        with self.db_connection(commit=False) as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = ? AND household_id = ?",
                (account_id, household_id)
            ).fetchone()
            return dict(row) if row else None

    def add_account(self, household_id: str, account_data: Dict[str, Any]) -> int:
        """
        Add a new account.

        The opening balance seeds both the opening and the running balance.
        It is the only balance a caller may set directly.

        Raises:
            ValidationError: If required fields are missing or invalid
        """
        is_valid, errors = validate_required_fields({'name': account_data.get('name')})
        if not is_valid:
            raise ValidationError("; ".join(errors))

        account_type = account_data.get('account_type', 'checking')
        if account_type not in ACCOUNT_TYPES:
            raise ValidationError(f"Invalid account type: {account_type}")

        opening_cents = to_minor_units(account_data.get('opening_balance', 0), "Opening balance")
        credit_limit_cents = None
        if account_data.get('credit_limit') is not None:
            credit_limit_cents = require_amount(
                to_minor_units(account_data['credit_limit'], "Credit limit"),
                "Credit limit", allow_zero=True
            )

        with self.db_connection(commit=True) as conn:
            account_id = insert_row(conn, 'accounts', {
                'household_id': household_id,
                'name': account_data['name'].strip(),
                'account_type': account_type,
                'currency': account_data.get('currency', 'EUR'),
                **money_fields(opening_cents, 'opening_balance'),
                **money_fields(opening_cents, 'balance'),
                **money_fields(credit_limit_cents, 'credit_limit'),
                'created_at': now(),
            })

        logger.info(f"Added account {account_id} ({account_type}) for household {household_id}")
        return account_id

    def update_account(self, household_id: str, account_id: int, updates: Dict[str, Any]) -> bool:
        """Update descriptive account fields. Balances change only through transactions."""
        updates = dict(updates)
        if 'credit_limit' in updates:
            limit = updates.pop('credit_limit')
            cents = None
            if limit is not None:
                cents = require_amount(to_minor_units(limit, "Credit limit"), "Credit limit", allow_zero=True)
            updates.update(money_fields(cents, 'credit_limit'))

        allowed_columns = {'name', 'currency', 'credit_limit', 'credit_limit_cents'}
        return self._safe_update('accounts', household_id, account_id, updates, allowed_columns)

    def deactivate_account(self, household_id: str, account_id: int) -> bool:
        """Soft delete: accounts referenced by transactions are never removed."""
        with self.db_connection(commit=True) as conn:
            success = update_row(conn, 'accounts', household_id, account_id,
                                 {'is_active': 0, 'updated_at': now()})
        if success:
            logger.info(f"Deactivated account {account_id}")
        return success

    # ==================== TRANSACTIONS ====================

    def get_transaction(self, household_id: str, transaction_id: int) -> Optional[Dict[str, Any]]:
        """Get a single transaction with its splits and savings goal contributions."""
        with self.db_connection(commit=False) as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ? AND household_id = ?",
                (transaction_id, household_id)
            ).fetchone()
            if not row:
                return None
            transaction = dict(row)
            transaction['splits'] = self._get_splits(conn, household_id, transaction_id)
            transaction['goal_contributions'] = rows(conn, """
                SELECT goal_id, amount, amount_cents FROM goal_contributions
                WHERE transaction_id = ? AND household_id = ?
                ORDER BY goal_id
            """, (transaction_id, household_id))
            return transaction

    def _get_splits(self, conn, household_id: str, transaction_id: int) -> List[Dict[str, Any]]:
        cursor = conn.execute("""
            SELECT * FROM transaction_splits
            WHERE transaction_id = ? AND household_id = ?
            ORDER BY sort_order, id
        """, (transaction_id, household_id))
        return [dict(row) for row in cursor.fetchall()]

    def get_transactions(self, household_id: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Get transactions with optional filters."""
        filters = filters or {}
        query = """
            SELECT t.*, a.name as account_name, c.name as category_name
            FROM transactions t
            JOIN accounts a ON t.account_id = a.id
            LEFT JOIN categories c ON t.category_id = c.id
            WHERE t.household_id = ?
        """
        params: List[Any] = [household_id]

        if filters.get('start_date') and filters.get('end_date'):
            is_valid, error = validate_date_range(filters['start_date'], filters['end_date'])
            if not is_valid:
                raise ValidationError(error)

        for key, clause in (
            ('account_id', "t.account_id = ?"),
            ('transaction_type', "t.transaction_type = ?"),
            ('category_id', "t.category_id = ?"),
            ('transfer_id', "t.transfer_id = ?"),
            ('bill_instance_id', "t.bill_instance_id = ?"),
            ('debt_id', "t.debt_id = ?"),
            ('savings_goal_id', "t.savings_goal_id = ?"),
            ('start_date', "t.transaction_date >= ?"),
            ('end_date', "t.transaction_date <= ?"),
        ):
            if filters.get(key) is not None:
                query += f" AND {clause}"
                params.append(filters[key])

        query += " ORDER BY t.transaction_date DESC, t.id DESC"
        if filters.get('limit'):
            query += " LIMIT ?"
            params.append(int(filters['limit']))

        with self.db_connection(commit=False) as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    # ==================== BILLS ====================

    def add_bill(self, household_id: str, bill_data: Dict[str, Any]) -> int:
        """Add a bill template."""
        is_valid, errors = validate_required_fields({
            'name': bill_data.get('name'),
            'default_amount': bill_data.get('default_amount'),
        })
        if not is_valid:
            raise ValidationError("; ".join(errors))

        amount_cents = require_amount(to_minor_units(bill_data['default_amount'], "Bill amount"), "Bill amount")

        with self.db_connection(commit=True) as conn:
            if bill_data.get('account_id') is not None:
                fetch_row(conn, 'accounts', household_id, bill_data['account_id'], "Account")
            bill_id = insert_row(conn, 'bills', {
                'household_id': household_id,
                'name': bill_data['name'].strip(),
                **money_fields(amount_cents, 'default_amount'),
                'due_day': bill_data.get('due_day'),
                'account_id': bill_data.get('account_id'),
                'created_at': now(),
            })

        logger.info(f"Added bill {bill_id}: {bill_data['name']}")
        return bill_id

    def get_bills(self, household_id: str, include_inactive: bool = False) -> List[Dict[str, Any]]:
        query = "SELECT * FROM bills WHERE household_id = ?"
        if not include_inactive:
            query += " AND is_active = 1"
        with self.db_connection(commit=False) as conn:
            return [dict(row) for row in conn.execute(query + " ORDER BY name", (household_id,)).fetchall()]

    def add_bill_instance(self, household_id: str, bill_id: int, due_date: str,
                          due_amount: Any = None) -> int:
        """
        Create one due occurrence of a bill.

        Args:
            household_id: Owning household
            bill_id: Bill template
            due_date: ISO date the instance is due
            due_amount: Amount due; defaults to the bill's default amount
        """
        due_date = require_date(due_date, "Due date")

        with self.db_connection(commit=True) as conn:
            bill = fetch_row(conn, 'bills', household_id, bill_id, "Bill")
            if due_amount is None:
                due_cents = bill['default_amount_cents']
            else:
                due_cents = require_amount(to_minor_units(due_amount, "Due amount"), "Due amount")

            status = 'overdue' if due_date < date.today().isoformat() else 'unpaid'
            instance_id = insert_row(conn, 'bill_instances', {
                'household_id': household_id,
                'bill_id': bill_id,
                'due_date': due_date,
                **money_fields(due_cents, 'due_amount'),
                **money_fields(0, 'amount_paid'),
                **money_fields(due_cents, 'remaining'),
                'status': status,
                'created_at': now(),
            })

        logger.info(f"Added instance {instance_id} of bill {bill_id} due {due_date}")
        return instance_id

    def get_bill_instance(self, household_id: str, instance_id: int) -> Optional[Dict[str, Any]]:
        with self.db_connection(commit=False) as conn:
            row = conn.execute("""
                SELECT bi.*, b.name as bill_name
                FROM bill_instances bi
                JOIN bills b ON bi.bill_id = b.id
                WHERE bi.id = ? AND bi.household_id = ?
            """, (instance_id, household_id)).fetchone()
            return dict(row) if row else None

    def get_bill_instances(self, household_id: str, bill_id: Optional[int] = None,
                           status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM bill_instances WHERE household_id = ?"
        params: List[Any] = [household_id]
        if bill_id is not None:
            query += " AND bill_id = ?"
            params.append(bill_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        with self.db_connection(commit=False) as conn:
            return [dict(row) for row in conn.execute(query + " ORDER BY due_date", params).fetchall()]

    # ==================== DEBTS ====================

    def get_debts(self, household_id: str, include_paid_off: bool = False) -> List[Dict[str, Any]]:
        """Get all debts."""
        query = "SELECT * FROM debts WHERE household_id = ?"
        if not include_paid_off:
            query += " AND status = 'active'"
        with self.db_connection(commit=False) as conn:
            return [dict(row) for row in conn.execute(query + " ORDER BY name", (household_id,)).fetchall()]

    def get_debt(self, household_id: str, debt_id: int) -> Optional[Dict[str, Any]]:
        """Get a specific debt."""
        with self.db_connection(commit=False) as conn:
            row = conn.execute(
                "SELECT * FROM debts WHERE id = ? AND household_id = ?",
                (debt_id, household_id)
            ).fetchone()
            return dict(row) if row else None

    def add_debt(self, household_id: str, debt_data: Dict[str, Any]) -> int:
        """
        Add a new debt.

        remaining_balance defaults to original_amount for a new loan; give it
        explicitly when tracking a loan that is already partly repaid.
        """
        is_valid, errors = validate_required_fields({
            'name': debt_data.get('name'),
            'original_amount': debt_data.get('original_amount'),
        })
        if not is_valid:
            raise ValidationError("; ".join(errors))

        original_cents = require_amount(to_minor_units(debt_data['original_amount'], "Original amount"),
                                        "Original amount")
        remaining_cents = original_cents
        if debt_data.get('remaining_balance') is not None:
            remaining_cents = require_amount(
                to_minor_units(debt_data['remaining_balance'], "Remaining balance"),
                "Remaining balance", allow_zero=True, max_value=original_cents
            )

        minimum_cents = None
        if debt_data.get('minimum_payment') is not None:
            minimum_cents = require_amount(to_minor_units(debt_data['minimum_payment'], "Minimum payment"),
                                           "Minimum payment", allow_zero=True)

        interest_rate = float(debt_data.get('interest_rate') or 0)
        if interest_rate < 0 or interest_rate > 100:
            raise ValidationError("Interest rate must be between 0 and 100")
        _check_debt_terms(debt_data)

        with self.db_connection(commit=True) as conn:
            if debt_data.get('account_id') is not None:
                fetch_row(conn, 'accounts', household_id, debt_data['account_id'], "Account")
            debt_id = insert_row(conn, 'debts', {
                'household_id': household_id,
                'name': debt_data['name'].strip(),
                'creditor': debt_data.get('creditor'),
                **money_fields(original_cents, 'original_amount'),
                **money_fields(remaining_cents, 'starting_balance'),
                **money_fields(remaining_cents, 'remaining_balance'),
                'interest_rate': interest_rate,
                'interest_type': debt_data.get('interest_type', 'fixed'),
                'loan_type': debt_data.get('loan_type', 'installment'),
                'compounding_frequency': debt_data.get('compounding_frequency', 'monthly'),
                'billing_cycle_days': int(debt_data.get('billing_cycle_days') or 30),
                **money_fields(minimum_cents, 'minimum_payment'),
                'account_id': debt_data.get('account_id'),
                'start_date': require_date(debt_data['start_date'], "Start date") if debt_data.get('start_date') else None,
                'status': 'paid_off' if remaining_cents == 0 else 'active',
                'created_at': now(),
            })

        logger.info(f"Added debt {debt_id}: {debt_data['name']}")
        return debt_id

    def update_debt(self, household_id: str, debt_id: int, updates: Dict[str, Any]) -> bool:
        """Update debt terms. The remaining balance moves only through payments."""
        updates = dict(updates)
        if 'minimum_payment' in updates:
            value = updates.pop('minimum_payment')
            cents = None if value is None else require_amount(
                to_minor_units(value, "Minimum payment"), "Minimum payment", allow_zero=True)
            updates.update(money_fields(cents, 'minimum_payment'))

        _check_debt_terms(updates)
        allowed_columns = {
            'name', 'creditor', 'interest_rate', 'interest_type', 'loan_type',
            'compounding_frequency', 'billing_cycle_days', 'minimum_payment', 'minimum_payment_cents',
        }
        return self._safe_update('debts', household_id, debt_id, updates, allowed_columns)

    def get_debt_payments(self, household_id: str, debt_id: int) -> List[Dict[str, Any]]:
        """Get all payments for a specific debt."""
        with self.db_connection(commit=False) as conn:
            cursor = conn.execute("""
                SELECT dp.*, t.description
                FROM debt_payments dp
                LEFT JOIN transactions t ON dp.transaction_id = t.id
                WHERE dp.debt_id = ? AND dp.household_id = ?
                ORDER BY dp.payment_date DESC, dp.id DESC
            """, (debt_id, household_id))
            return [dict(row) for row in cursor.fetchall()]

    # ==================== SAVINGS GOALS ====================

    def get_savings_goals(self, household_id: str) -> List[Dict[str, Any]]:
        with self.db_connection(commit=False) as conn:
            cursor = conn.execute(
                "SELECT * FROM savings_goals WHERE household_id = ? ORDER BY name",
                (household_id,)
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_savings_goal(self, household_id: str, goal_id: int) -> Optional[Dict[str, Any]]:
        with self.db_connection(commit=False) as conn:
            row = conn.execute(
                "SELECT * FROM savings_goals WHERE id = ? AND household_id = ?",
                (goal_id, household_id)
            ).fetchone()
            return dict(row) if row else None

    def add_savings_goal(self, household_id: str, goal_data: Dict[str, Any]) -> int:
        """Add a savings goal. Progress starts at zero and grows through contributions."""
        is_valid, errors = validate_required_fields({
            'name': goal_data.get('name'),
            'target_amount': goal_data.get('target_amount'),
        })
        if not is_valid:
            raise ValidationError("; ".join(errors))

        target_cents = require_amount(to_minor_units(goal_data['target_amount'], "Target amount"), "Target amount")

        with self.db_connection(commit=True) as conn:
            if goal_data.get('account_id') is not None:
                fetch_row(conn, 'accounts', household_id, goal_data['account_id'], "Account")
            goal_id = insert_row(conn, 'savings_goals', {
                'household_id': household_id,
                'name': goal_data['name'].strip(),
                **money_fields(target_cents, 'target_amount'),
                **money_fields(0, 'current_amount'),
                'target_date': require_date(goal_data['target_date'], "Target date") if goal_data.get('target_date') else None,
                'account_id': goal_data.get('account_id'),
                'created_at': now(),
            })

        logger.info(f"Added savings goal {goal_id}: {goal_data['name']}")
        return goal_id

    def get_goal_contributions(self, household_id: str, goal_id: int) -> List[Dict[str, Any]]:
        with self.db_connection(commit=False) as conn:
            cursor = conn.execute("""
                SELECT gc.*, t.transaction_date, t.description
                FROM goal_contributions gc
                LEFT JOIN transactions t ON gc.transaction_id = t.id
                WHERE gc.goal_id = ? AND gc.household_id = ?
                ORDER BY gc.id
            """, (goal_id, household_id))
            return [dict(row) for row in cursor.fetchall()]

    def get_goal_progress(self, household_id: str, goal_id: int,
                          today: Optional[date] = None) -> Dict[str, Any]:
        """Calculate savings goal progress and the monthly amount still needed."""
        goal = self.get_savings_goal(household_id, goal_id)
        if not goal:
            raise NotFoundError(f"Savings goal {goal_id} not found")

        current = goal['current_amount_cents']
        target = goal['target_amount_cents']
        percentage = (current / target * 100) if target > 0 else 0
        remaining = max(target - current, 0)

        days_remaining = None
        months_remaining = None
        monthly_target_cents = None

        if goal['target_date']:
            deadline = date.fromisoformat(goal['target_date'][:10])
            today = today or date.today()
            days_remaining = (deadline - today).days

            delta = relativedelta(deadline, today)
            months_remaining = delta.years * 12 + delta.months
            # A started month counts as a month to save in
            if delta.days > 0:
                months_remaining += 1

            if remaining <= 0:
                monthly_target_cents = 0
            elif months_remaining > 0:
                monthly_target_cents = math.ceil(remaining / months_remaining)
            else:
                monthly_target_cents = remaining

        return {
            'goal_id': goal_id,
            'name': goal['name'],
            'current_amount_cents': current,
            'target_amount_cents': target,
            'percentage': round(percentage, 1),
            'remaining_amount_cents': remaining,
            'target_date': goal['target_date'],
            'days_remaining': days_remaining,
            'months_remaining': months_remaining,
            'monthly_target_cents': monthly_target_cents,
            'is_complete': current >= target,
        }

    # ==================== MILESTONES ====================

    def get_milestones(self, household_id: str, entity_type: str, entity_id: int) -> List[Dict[str, Any]]:
        if entity_type not in MILESTONE_ENTITY_TYPES:
            raise ValidationError(f"Invalid milestone entity type: {entity_type}")
        with self.db_connection(commit=False) as conn:
            cursor = conn.execute("""
                SELECT * FROM milestones
                WHERE household_id = ? AND entity_type = ? AND entity_id = ?
                ORDER BY percentage
            """, (household_id, entity_type, entity_id))
            return [dict(row) for row in cursor.fetchall()]

    # ==================== REPAIR LOG ====================

    def get_repair_log(self, household_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        with self.db_connection(commit=False) as conn:
            cursor = conn.execute("""
                SELECT * FROM repair_log WHERE household_id = ?
                ORDER BY id DESC LIMIT ?
            """, (household_id, limit))
            return [dict(row) for row in cursor.fetchall()]
