"""
Reconciliation routes: trigger a run and inspect past runs / discrepancies.
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from models import Discrepancy, ReconciliationRun
from routes.auth import require_operator
from schemas import DiscrepancyResponse, ReconciliationRunRequest, ReconciliationRunResponse
from services.scheduler import Scheduler, get_scheduler

router = APIRouter(
    prefix="/reconciliation",
    tags=["Reconciliation"],
    dependencies=[Depends(require_operator)],
)


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.post("/run")
def run_reconciliation(
    data: Optional[ReconciliationRunRequest] = None,
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """Reconcile the processor ledger against orders (default: trailing 24h)."""
    data = data or ReconciliationRunRequest()
    return scheduler.run_reconciliation(
        db,
        window_start=_as_naive_utc(data.window_start),
        window_end=_as_naive_utc(data.window_end),
    )


@router.get("/runs", response_model=List[ReconciliationRunResponse])
def list_runs(
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """Most recent reconciliation runs first."""
    query = db.query(ReconciliationRun)
    if status:
        query = query.filter(ReconciliationRun.status == status)
    return query.order_by(ReconciliationRun.id.desc()).limit(limit).all()


@router.get("/discrepancies", response_model=List[DiscrepancyResponse])
def list_discrepancies(
    unresolved_only: bool = True,
    discrepancy_type: Optional[str] = None,
    run_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Discrepancies needing attention (unresolved by default)."""
    query = db.query(Discrepancy)
    if unresolved_only:
        query = query.filter(Discrepancy.auto_resolved == False)
    if discrepancy_type:
        query = query.filter(Discrepancy.discrepancy_type == discrepancy_type)
    if run_id is not None:
        query = query.filter(Discrepancy.reconciliation_id == run_id)
    return query.order_by(Discrepancy.id.desc()).limit(limit).all()
