"""
Lifecycle trigger route.
The external daily cron POSTs here; the run is idempotent.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from routes.auth import require_operator
from schemas import LifecycleRunResponse
from services.scheduler import Scheduler, get_scheduler

router = APIRouter(prefix="/lifecycle", tags=["Lifecycle"], dependencies=[Depends(require_operator)])


@router.post("/run", response_model=LifecycleRunResponse)
def run_lifecycle(
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """Advance due domains one phase and deliver due notifications."""
    return scheduler.run_lifecycle(db)
