"""
Transactions API endpoints
"""
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from typing import List, Optional

from homeledger.database import LedgerDatabase, TRANSFER_TYPES
from homeledger.exceptions import LedgerError
from homeledger.transactions import TransactionService
from homeledger.backend.api.auth import get_current_user, User
from homeledger.backend.api.deps import get_db, http_error

router = APIRouter()


# Pydantic models
class SplitIn(BaseModel):
    category_id: Optional[int] = None
    amount: Optional[Decimal] = None
    percentage: Optional[Decimal] = None
    description: str = ""


class GoalAllocationIn(BaseModel):
    savings_goal_id: int
    amount: Decimal


class TransactionCreate(BaseModel):
    account_id: int
    transaction_date: str
    transaction_type: str
    amount: Decimal
    description: str = ""
    notes: Optional[str] = None
    category_id: Optional[int] = None
    bill_instance_id: Optional[int] = None
    debt_id: Optional[int] = None
    savings_goal_id: Optional[int] = None
    splits: Optional[List[SplitIn]] = None
    goal_contributions: Optional[List[GoalAllocationIn]] = None


class TransactionUpdate(BaseModel):
    account_id: Optional[int] = None
    transaction_date: Optional[str] = None
    transaction_type: Optional[str] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    category_id: Optional[int] = None
    bill_instance_id: Optional[int] = None
    debt_id: Optional[int] = None
    savings_goal_id: Optional[int] = None
    splits: Optional[List[SplitIn]] = None
    goal_contributions: Optional[List[GoalAllocationIn]] = None


class SplitsReplace(BaseModel):
    splits: List[SplitIn]


@router.get("/")
async def get_transactions(
    account_id: Optional[int] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    transaction_type: Optional[str] = None,
    category_id: Optional[int] = None,
    limit: Optional[int] = Query(None, ge=1, le=10000),
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get transactions with optional filters"""
    filters = {
        'account_id': account_id,
        'start_date': start_date,
        'end_date': end_date,
        'transaction_type': transaction_type,
        'category_id': category_id,
        'limit': limit,
    }
    try:
        transactions = db.get_transactions(current_user.household_id, filters)
    except LedgerError as e:
        raise http_error(e) from e
    return {"transactions": transactions, "count": len(transactions)}


@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get a specific transaction with its splits and goal contributions"""
    transaction = db.get_transaction(current_user.household_id, transaction_id)
    if not transaction:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return transaction


@router.post("/")
async def create_transaction(
    transaction: TransactionCreate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Create a new income or expense"""
    try:
        transaction_id = TransactionService(db).create_transaction(
            current_user.household_id, transaction.model_dump(exclude_none=True)
        )
        return {"message": "Transaction created successfully", "transaction_id": transaction_id}
    except LedgerError as e:
        raise http_error(e) from e


@router.put("/{transaction_id}")
async def update_transaction(
    transaction_id: int,
    transaction: TransactionUpdate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Update a transaction. Transfer legs update their whole transfer."""
    updates = transaction.model_dump(exclude_unset=True)
    service = TransactionService(db)
    try:
        existing = db.get_transaction(current_user.household_id, transaction_id)
        if not existing:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")

        if existing['transaction_type'] in TRANSFER_TYPES and existing['transfer_id']:
            transfer = service.transfers.update_from_leg(current_user.household_id, transaction_id, updates)
            return {"message": "Transfer updated successfully", "transfer": transfer}

        updated = service.update_transaction(current_user.household_id, transaction_id, updates)
        return {"message": "Transaction updated successfully", "transaction": updated}
    except LedgerError as e:
        raise http_error(e) from e


@router.put("/{transaction_id}/splits")
async def replace_splits(
    transaction_id: int,
    body: SplitsReplace,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Replace the splits of a transaction"""
    try:
        splits = TransactionService(db).replace_splits(
            current_user.household_id, transaction_id, [split.model_dump() for split in body.splits]
        )
        return {"splits": splits, "count": len(splits)}
    except LedgerError as e:
        raise http_error(e) from e


@router.delete("/{transaction_id}")
async def delete_transaction(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Delete a transaction. Deleting a transfer leg deletes the whole transfer."""
    try:
        result = TransactionService(db).delete_transaction(current_user.household_id, transaction_id)
        return {"message": "Transaction deleted successfully", **result}
    except LedgerError as e:
        raise http_error(e) from e
