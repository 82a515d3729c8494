"""
Bills API endpoints
Bill templates and their due instances
"""
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Optional

from homeledger.cascade import RecalculationCoordinator
from homeledger.database import LedgerDatabase
from homeledger.exceptions import LedgerError
from homeledger.backend.api.auth import get_current_user, User
from homeledger.backend.api.deps import get_db, http_error

router = APIRouter()


class BillCreate(BaseModel):
    name: str
    default_amount: Decimal
    due_day: Optional[int] = None
    account_id: Optional[int] = None


class BillInstanceCreate(BaseModel):
    due_date: str
    due_amount: Optional[Decimal] = None


@router.get("/")
async def get_bills(
    include_inactive: bool = False,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get all bills"""
    bills = db.get_bills(current_user.household_id, include_inactive=include_inactive)
    return {"bills": bills, "count": len(bills)}


@router.post("/")
async def create_bill(
    bill: BillCreate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Create a new bill"""
    try:
        bill_id = db.add_bill(current_user.household_id, bill.model_dump())
        return {"message": "Bill created successfully", "bill_id": bill_id}
    except LedgerError as e:
        raise http_error(e) from e


@router.get("/instances/{instance_id}")
async def get_bill_instance(
    instance_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get a bill instance with its payments and milestones"""
    instance = db.get_bill_instance(current_user.household_id, instance_id)
    if not instance:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bill instance not found")
    instance['payments'] = db.get_transactions(current_user.household_id, {'bill_instance_id': instance_id})
    instance['milestones'] = db.get_milestones(current_user.household_id, 'bill_instance', instance_id)
    return instance


@router.post("/instances/{instance_id}/recompute")
async def recompute_bill_instance(
    instance_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Re-derive paid amount and status from the linked transactions"""
    try:
        instance = RecalculationCoordinator(db).recompute_bill_instance(current_user.household_id, instance_id)
        return {"message": "Bill instance recomputed", "bill_instance": instance}
    except LedgerError as e:
        raise http_error(e) from e


@router.get("/{bill_id}/instances")
async def get_bill_instances(
    bill_id: int,
    status_filter: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get the due instances of a bill"""
    instances = db.get_bill_instances(current_user.household_id, bill_id=bill_id, status=status_filter)
    return {"instances": instances, "count": len(instances)}


@router.post("/{bill_id}/instances")
async def create_bill_instance(
    bill_id: int,
    instance: BillInstanceCreate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Create a due instance of a bill"""
    try:
        instance_id = db.add_bill_instance(
            current_user.household_id, bill_id, instance.due_date, instance.due_amount
        )
        return {"message": "Bill instance created successfully", "instance_id": instance_id}
    except LedgerError as e:
        raise http_error(e) from e
