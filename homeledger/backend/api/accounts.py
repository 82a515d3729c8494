"""
Accounts API endpoints
Household accounts, balances and available credit
"""
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Optional

from homeledger.database import LedgerDatabase
from homeledger.exceptions import LedgerError
from homeledger.ledger import AccountLedger, available_credit_cents
from homeledger.backend.api.auth import get_current_user, User
from homeledger.backend.api.deps import get_db, http_error

router = APIRouter()


# Pydantic models
class AccountCreate(BaseModel):
    name: str
    account_type: str = "checking"
    currency: str = "EUR"
    opening_balance: Decimal = Decimal("0")
    credit_limit: Optional[Decimal] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = None
    currency: Optional[str] = None
    credit_limit: Optional[Decimal] = None


@router.get("/")
async def get_accounts(
    include_inactive: bool = False,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get all accounts of the household"""
    accounts = db.get_accounts(current_user.household_id, include_inactive=include_inactive)
    for account in accounts:
        account['available_credit_cents'] = available_credit_cents(account)
    return {"accounts": accounts, "count": len(accounts)}


@router.get("/{account_id}")
async def get_account(
    account_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get a specific account with its balance"""
    account = db.get_account(current_user.household_id, account_id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    account['available_credit_cents'] = available_credit_cents(account)
    return account


@router.get("/{account_id}/balance")
async def get_account_balance(
    account_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get the current balance and available credit"""
    try:
        return AccountLedger(db).get_balance(current_user.household_id, account_id)
    except LedgerError as e:
        raise http_error(e) from e


@router.post("/")
async def create_account(
    account: AccountCreate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Create a new account"""
    try:
        account_id = db.add_account(current_user.household_id, account.model_dump())
        return {"message": "Account created successfully", "account_id": account_id}
    except LedgerError as e:
        raise http_error(e) from e


@router.put("/{account_id}")
async def update_account(
    account_id: int,
    account: AccountUpdate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Update account details"""
    try:
        success = db.update_account(current_user.household_id, account_id, account.model_dump(exclude_unset=True))
    except LedgerError as e:
        raise http_error(e) from e
    if not success:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return {"message": "Account updated successfully"}


@router.delete("/{account_id}")
async def deactivate_account(
    account_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Deactivate an account. Its transactions are kept."""
    success = db.deactivate_account(current_user.household_id, account_id)
    if not success:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return {"message": "Account deactivated successfully"}
