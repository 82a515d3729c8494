"""
Home Ledger - Exceptions

Every error raised by the ledger core derives from LedgerError so the HTTP
layer and the scripts can map them in one place.
"""
from typing import List, Any


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class ValidationError(LedgerError):
    """Input rejected before any write was made."""
    pass


class NotFoundError(LedgerError):
    """Entity does not exist inside the caller's household."""
    pass


class ConsistencyViolation(LedgerError):
    """Stored data breaks a ledger invariant. Never corrected automatically."""

    def __init__(self, violations: List[Any], message: str = None):
        self.violations = list(violations)
        super().__init__(message or f"{len(self.violations)} consistency violation(s) found")


class ConcurrencyConflict(LedgerError):
    """The write lock could not be acquired. Safe to retry."""
    retryable = True


# ==================== DATABASE ====================
class DatabaseError(LedgerError):
    """Base exception for database operations."""
    pass


class DatabaseConnectionError(DatabaseError):
    """Connection to database failed."""
    pass


class DatabaseIntegrityError(DatabaseError):
    """Database integrity constraint violated."""
    pass
