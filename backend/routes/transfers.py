"""
Domain transfer routes.
Sender initiates, recipient pays and completes, either side may cancel.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import or_
from sqlalchemy.orm import Session

from database import get_db
from models import Customer, Transfer
from routes.auth import get_current_customer
from schemas import (
    TransferCompleteRequest,
    TransferCreate,
    TransferPaymentRequest,
    TransferPaymentResponse,
    TransferResponse,
)
from services import transfer_service
from services.scheduler import Scheduler, get_scheduler

router = APIRouter(prefix="/transfers", tags=["Transfers"])


@router.get("/", response_model=List[TransferResponse])
def list_transfers(
    status: Optional[str] = None,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    """Transfers the customer sends or receives."""
    query = db.query(Transfer).filter(
        or_(Transfer.from_customer_id == customer.id, Transfer.to_customer_id == customer.id)
    )
    if status:
        query = query.filter(Transfer.status == status)
    return query.order_by(Transfer.id.desc()).all()


@router.post("/", response_model=TransferResponse)
def initiate_transfer(
    data: TransferCreate,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    return transfer_service.initiate_transfer(
        db, customer.user_id, data.domain_id, data.to_email, scheduler.now(),
    )


@router.post("/{transfer_id}/payment", response_model=TransferPaymentResponse)
def create_transfer_payment(
    transfer_id: int,
    data: Optional[TransferPaymentRequest] = None,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    data = data or TransferPaymentRequest()
    return transfer_service.create_transfer_payment(
        db, scheduler.gateway, customer.user_id, transfer_id,
        return_url=data.return_url, cancel_url=data.cancel_url,
    )


@router.post("/{transfer_id}/complete", response_model=TransferResponse)
def complete_transfer(
    transfer_id: int,
    data: TransferCompleteRequest,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    return transfer_service.complete_transfer(
        db, scheduler.gateway, customer.user_id, transfer_id,
        data.processor_order_id, scheduler.now(),
    )


@router.post("/{transfer_id}/cancel", response_model=TransferResponse)
def cancel_transfer(
    transfer_id: int,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    return transfer_service.cancel_transfer(db, customer.user_id, transfer_id, scheduler.now())
