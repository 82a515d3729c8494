"""
Debts API endpoints
"""
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from typing import Optional
import logging

from homeledger.cascade import RecalculationCoordinator
from homeledger.database import LedgerDatabase
from homeledger.exceptions import LedgerError
from homeledger.interest import compare_payoff_methods, project_payoff, simulate_payoff
from homeledger.money import to_minor_units
from homeledger.backend.api.auth import get_current_user, User
from homeledger.backend.api.deps import get_db, http_error

logger = logging.getLogger(__name__)

router = APIRouter()


class DebtCreate(BaseModel):
    name: str
    creditor: Optional[str] = None
    original_amount: Decimal
    remaining_balance: Optional[Decimal] = None  # defaults to original_amount
    interest_rate: float = 0.0
    interest_type: str = 'fixed'  # 'fixed', 'variable' or 'none'
    loan_type: str = 'installment'  # 'installment' or 'revolving'
    compounding_frequency: str = 'monthly'
    billing_cycle_days: int = 30
    minimum_payment: Optional[Decimal] = None
    account_id: Optional[int] = None
    start_date: Optional[str] = None


class DebtUpdate(BaseModel):
    name: Optional[str] = None
    creditor: Optional[str] = None
    interest_rate: Optional[float] = None
    interest_type: Optional[str] = None
    loan_type: Optional[str] = None
    compounding_frequency: Optional[str] = None
    billing_cycle_days: Optional[int] = None
    minimum_payment: Optional[Decimal] = None


@router.get("/")
async def get_debts(
    include_paid_off: bool = False,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get all debts"""
    debts = db.get_debts(current_user.household_id, include_paid_off=include_paid_off)
    return {"debts": debts, "count": len(debts)}


@router.get("/payoff-strategy")
async def get_payoff_strategy(
    extra_payment: Decimal = Query(Decimal(0), ge=0),
    method: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Snowball and avalanche payoff plans for the active debts, or one of them"""
    debts = db.get_debts(current_user.household_id)
    try:
        extra_cents = to_minor_units(extra_payment, "Extra payment")
        if method:
            return simulate_payoff(debts, extra_cents, method)
        return compare_payoff_methods(debts, extra_cents)
    except LedgerError as e:
        raise http_error(e) from e


@router.get("/{debt_id}")
async def get_debt(
    debt_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get a debt with its payment history, milestones and payoff projection"""
    debt = db.get_debt(current_user.household_id, debt_id)
    if not debt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Debt not found")
    return {
        "debt": debt,
        "payments": db.get_debt_payments(current_user.household_id, debt_id),
        "milestones": db.get_milestones(current_user.household_id, 'debt', debt_id),
        "payoff": project_payoff(debt),
    }


@router.post("/")
async def create_debt(
    debt: DebtCreate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Create a new debt"""
    try:
        debt_id = db.add_debt(current_user.household_id, debt.model_dump())
        return {"message": "Debt created successfully", "debt_id": debt_id}
    except LedgerError as e:
        logger.error(f"Error creating debt: {e}")
        raise http_error(e) from e


@router.put("/{debt_id}")
async def update_debt(
    debt_id: int,
    debt: DebtUpdate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Update debt terms"""
    try:
        success = db.update_debt(current_user.household_id, debt_id, debt.model_dump(exclude_unset=True))
    except LedgerError as e:
        raise http_error(e) from e
    if not success:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Debt not found")
    return {"message": "Debt updated successfully"}


@router.post("/{debt_id}/recompute")
async def recompute_debt(
    debt_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Re-derive a debt's balance from its payments, then its status and milestones"""
    try:
        debt = RecalculationCoordinator(db).recompute_debt(current_user.household_id, debt_id)
        return {"message": "Debt recomputed", "debt": debt}
    except LedgerError as e:
        raise http_error(e) from e
