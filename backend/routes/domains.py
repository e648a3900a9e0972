"""
Domain read routes and manual hold operations.
Holds are placed by the fraud / dispute collaborators and cleared by staff;
both need an operator token.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from models import Domain, LifecycleEvent
from routes.auth import require_operator
from schemas import ClearHoldRequest, DomainResponse, HoldRequest, LifecycleEventResponse
from domain.exceptions import ConflictError
from services.ledger_store import clear_hold, get_domain, place_hold
from services.scheduler import Scheduler, get_scheduler

router = APIRouter(prefix="/domains", tags=["Domains"])


@router.get("/", response_model=List[DomainResponse])
def list_domains(
    status: Optional[str] = None,
    customer_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    query = db.query(Domain)
    if status:
        query = query.filter(Domain.status == status)
    if customer_id is not None:
        query = query.filter(Domain.customer_id == customer_id)
    return query.order_by(Domain.id).limit(limit).all()


@router.get("/{domain_id}", response_model=DomainResponse)
def read_domain(domain_id: int, db: Session = Depends(get_db)):
    return get_domain(db, domain_id)


@router.get("/{domain_id}/events", response_model=List[LifecycleEventResponse])
def list_domain_events(domain_id: int, db: Session = Depends(get_db)):
    """Audit trail, oldest first."""
    get_domain(db, domain_id)
    return (
        db.query(LifecycleEvent)
        .filter(LifecycleEvent.domain_id == domain_id)
        .order_by(LifecycleEvent.id)
        .all()
    )


@router.post("/{domain_id}/hold", response_model=DomainResponse, dependencies=[Depends(require_operator)])
def hold_domain(
    domain_id: int,
    data: HoldRequest,
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    domain = get_domain(db, domain_id)
    if not place_hold(db, domain, data.hold, data.notes, scheduler.now()):
        db.rollback()
        raise ConflictError(f"Domain {domain_id} changed status concurrently, retry")
    db.commit()
    db.refresh(domain)
    return domain


@router.post(
    "/{domain_id}/clear-hold", response_model=DomainResponse, dependencies=[Depends(require_operator)],
)
def clear_domain_hold(
    domain_id: int,
    data: Optional[ClearHoldRequest] = None,
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    domain = get_domain(db, domain_id)
    notes = data.notes if data else None
    if not clear_hold(db, domain, notes, scheduler.now()):
        db.rollback()
        raise ConflictError(f"Domain {domain_id} changed status concurrently, retry")
    db.commit()
    db.refresh(domain)
    return domain
