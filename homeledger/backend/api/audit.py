"""
Audit API endpoints
Consistency checks and explicit repairs
"""
from fastapi import APIRouter, Depends, Query

from homeledger.database import LedgerDatabase
from homeledger.exceptions import LedgerError
from homeledger.ledger import AccountLedger
from homeledger.verifier import ConsistencyVerifier
from homeledger.backend.api.auth import get_current_user, User
from homeledger.backend.api.deps import get_db, http_error

router = APIRouter()


@router.get("/")
async def verify_household(current_user: User = Depends(get_current_user), db: LedgerDatabase = Depends(get_db)):
    """Run the consistency checks for the household. Changes nothing."""
    try:
        violations, balance_drift = ConsistencyVerifier(db).audit(current_user.household_id)
    except LedgerError as e:
        raise http_error(e) from e
    return {
        "consistent": not violations and not balance_drift,
        "violations": [violation._asdict() for violation in violations],
        "count": len(violations),
        "balance_drift": balance_drift,
    }


@router.post("/repair-money-drift")
async def repair_money_drift(current_user: User = Depends(get_current_user), db: LedgerDatabase = Depends(get_db)):
    """Rewrite decimal columns that drifted from their cents columns"""
    try:
        repaired = ConsistencyVerifier(db).repair_money_drift(current_user.household_id, actor=current_user.user_id)
        return {"message": f"Repaired {repaired} column(s)", "repaired": repaired}
    except LedgerError as e:
        raise http_error(e) from e


@router.post("/recalculate-balances")
async def recalculate_balances(
    dry_run: bool = False,
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Rewrite drifted account balances from the transaction ledger"""
    try:
        return AccountLedger(db).recalculate_balances(
            current_user.household_id, actor=current_user.user_id, dry_run=dry_run
        )
    except LedgerError as e:
        raise http_error(e) from e


@router.get("/repair-log")
async def get_repair_log(
    limit: int = Query(100, ge=1, le=1000),
    current_user: User = Depends(get_current_user),
    db: LedgerDatabase = Depends(get_db)
):
    """Get the history of explicit repairs"""
    entries = db.get_repair_log(current_user.household_id, limit=limit)
    return {"entries": entries, "count": len(entries)}
