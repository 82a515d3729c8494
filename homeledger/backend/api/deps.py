"""
Shared dependencies for the API routers
"""
import os
import logging
from typing import Optional

from fastapi import HTTPException, status

from homeledger.database import LedgerDatabase, DEFAULT_DB_PATH
from homeledger.exceptions import (
    LedgerError,
    ValidationError,
    NotFoundError,
    ConcurrencyConflict,
    ConsistencyViolation,
    DatabaseIntegrityError,
)

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DATABASE_PATH", DEFAULT_DB_PATH)
_db: Optional[LedgerDatabase] = None


def get_db() -> LedgerDatabase:
    """Database shared by all requests, opened on first use."""
    global _db
    if _db is None:
        _db = LedgerDatabase(db_path=DB_PATH)
    return _db


def http_error(error: LedgerError) -> HTTPException:
    """Map a ledger exception to the HTTP error returned to the caller."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, ConcurrencyConflict):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(error),
            headers={"Retry-After": "1"},
        )
    if isinstance(error, ConsistencyViolation):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(error), "violations": [list(v) for v in error.violations]},
        )
    if isinstance(error, DatabaseIntegrityError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    logger.error(f"Unhandled ledger error: {error}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal database error")
