"""
Transfers API endpoints
Paired money movements between two accounts of the household
"""
from decimal import Decimal
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional

from homeledger.database import LedgerDatabase
from homeledger.exceptions import LedgerError
from homeledger.transfers import TransferService
from homeledger.backend.api.auth import get_current_user, User
from homeledger.backend.api.deps import get_db, http_error

router = APIRouter()


# Pydantic models
class TransferCreate(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: Decimal
    fee: Decimal = Decimal("0")
    transfer_date: str
    description: str = ""
    notes: Optional[str] = None
    savings_goal_id: Optional[int] = None


class TransferUpdate(BaseModel):
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    amount: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    transfer_date: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class TransferLink(BaseModel):
    first_transaction_id: int
    second_transaction_id: int


@router.get("/")
async def get_transfers(
    account_id: Optional[int] = None,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get all transfers, optionally touching one account"""
    transfers = TransferService(db).list_transfers(current_user.household_id, account_id)
    return {"transfers": transfers, "count": len(transfers)}


@router.get("/{transfer_id}")
async def get_transfer(
    transfer_id: str,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get a transfer with both legs"""
    try:
        return TransferService(db).get_transfer(current_user.household_id, transfer_id)
    except LedgerError as e:
        raise http_error(e) from e


@router.post("/")
async def create_transfer(
    transfer: TransferCreate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Move money between two accounts"""
    try:
        result = TransferService(db).create_transfer(current_user.household_id, transfer.model_dump())
        return {"message": "Transfer created successfully", **result}
    except LedgerError as e:
        raise http_error(e) from e


@router.post("/link")
async def link_transactions(
    link: TransferLink,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Turn an existing expense and income into a transfer"""
    try:
        result = TransferService(db).link_existing_as_transfer(
            current_user.household_id, link.first_transaction_id, link.second_transaction_id
        )
        return {"message": "Transactions linked as transfer", **result}
    except LedgerError as e:
        raise http_error(e) from e


@router.put("/{transfer_id}")
async def update_transfer(
    transfer_id: str,
    transfer: TransferUpdate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Update a transfer"""
    try:
        updated = TransferService(db).update_transfer(
            current_user.household_id, transfer_id, transfer.model_dump(exclude_unset=True)
        )
        return {"message": "Transfer updated successfully", "transfer": updated}
    except LedgerError as e:
        raise http_error(e) from e


@router.delete("/{transfer_id}")
async def delete_transfer(
    transfer_id: str,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Delete a transfer and both of its transactions"""
    try:
        result = TransferService(db).delete_transfer(current_user.household_id, transfer_id)
        return {"message": "Transfer deleted successfully", **result}
    except LedgerError as e:
        raise http_error(e) from e
