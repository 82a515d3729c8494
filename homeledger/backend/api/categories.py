"""
Categories API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from homeledger.database import LedgerDatabase
from homeledger.exceptions import LedgerError
from homeledger.backend.api.auth import get_current_user, User
from homeledger.backend.api.deps import get_db, http_error

router = APIRouter()


class CategoryCreate(BaseModel):
    name: str
    category_type: str = "expense"


@router.get("/")
async def get_categories(current_user: User = Depends(get_current_user), db: LedgerDatabase = Depends(get_db)):
    """Get all categories"""
    categories = db.get_categories(current_user.household_id)
    return {"categories": categories, "count": len(categories)}


@router.post("/")
async def create_category(
    category: CategoryCreate,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Create a new category"""
    try:
        category_id = db.add_category(current_user.household_id, category.name, category.category_type)
        return {"message": "Category created successfully", "category_id": category_id}
    except LedgerError as e:
        raise http_error(e) from e


@router.delete("/{category_id}")
async def delete_category(
    category_id: int,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Delete a category that no transaction uses"""
    try:
        success = db.delete_category(current_user.household_id, category_id)
    except LedgerError as e:
        raise http_error(e) from e
    if not success:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    return {"message": "Category deleted successfully"}
