"""
Checkout routes: start a one-time or recurring domain purchase for the
authenticated customer.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from models import Customer
from routes.auth import get_current_customer
from schemas import (
    CheckoutOrderCreate,
    CheckoutOrderResponse,
    SubscriptionCheckoutCreate,
    SubscriptionCheckoutResponse,
)
from services.checkout_service import create_checkout_order, create_subscription_checkout
from services.scheduler import Scheduler, get_scheduler

router = APIRouter(prefix="/checkout", tags=["Checkout"])


@router.post("/orders", response_model=CheckoutOrderResponse)
def create_order(
    data: CheckoutOrderCreate,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """Create the processor order and the pending order awaiting capture."""
    return create_checkout_order(
        db,
        scheduler.gateway,
        user_id=customer.user_id,
        email=customer.email,
        fqdn=data.fqdn,
        amount=data.amount,
        now=scheduler.now(),
        plan_code=data.plan_code,
        domain_type=data.domain_type,
        return_url=data.return_url,
        cancel_url=data.cancel_url,
    )


@router.post("/subscriptions", response_model=SubscriptionCheckoutResponse)
def create_subscription(
    data: SubscriptionCheckoutCreate,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """Create the processor subscription and the pending order awaiting activation."""
    return create_subscription_checkout(
        db,
        scheduler.gateway,
        user_id=customer.user_id,
        email=customer.email,
        fqdn=data.fqdn,
        amount=data.amount,
        plan_code=data.plan_code,
        processor_plan_id=data.processor_plan_id,
        now=scheduler.now(),
        domain_type=data.domain_type,
        return_url=data.return_url,
        cancel_url=data.cancel_url,
    )
