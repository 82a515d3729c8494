"""
Savings goals API endpoints
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


class GoalCreate(BaseModel):
    name: str
    target_amount: Decimal
    target_date: Optional[str] = None
    account_id: Optional[int] = None


@router.get("/")
async def get_goals(current_user: User = Depends(get_current_user), db: LedgerDatabase = Depends(get_db)):
    """Get all savings goals"""
    goals = db.get_savings_goals(current_user.household_id)
    return {"goals": goals, "count": len(goals)}


@router.get("/{goal_id}")
async def get_goal(
    goal_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get a savings goal with its progress, contributions and milestones"""
    goal = db.get_savings_goal(current_user.household_id, goal_id)
    if not goal:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Savings goal not found")
    return {
        "goal": goal,
        "progress": db.get_goal_progress(current_user.household_id, goal_id),
        "contributions": db.get_goal_contributions(current_user.household_id, goal_id),
        "milestones": db.get_milestones(current_user.household_id, 'savings_goal', goal_id),
    }


@router.post("/")
async def create_goal(
    goal: GoalCreate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Create a new savings goal"""
    try:
        goal_id = db.add_savings_goal(current_user.household_id, goal.model_dump())
        return {"message": "Savings goal created successfully", "goal_id": goal_id}
    except LedgerError as e:
        raise http_error(e) from e


@router.post("/{goal_id}/recompute")
async def recompute_goal(
    goal_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Re-derive the saved amount from recorded contributions"""
    try:
        goal = RecalculationCoordinator(db).recompute_goal(current_user.household_id, goal_id)
        return {"message": "Savings goal recomputed", "goal": goal}
    except LedgerError as e:
        raise http_error(e) from e
