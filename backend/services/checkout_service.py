"""
Checkout: record the customer's intent to lease a domain.

Creates the processor order or subscription (a MOCK- id in dev mode) and
the matching PendingOrder row. The capture handler fulfils a one-time
order once the processor reports the payment; the subscription handler
fulfils a subscription once the processor activates it.

An unpaid checkout reserves its fqdn for CHECKOUT_HOLD_MINUTES so two
buyers cannot pay for the same name. Fulfilment re-checks availability.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from config import settings
from domain.enums import PendingOrderStatus
from domain.exceptions import ConflictError, NotFoundError
from models import PendingOrder, Plan
from services.ledger_store import fqdn_is_taken
from services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)


def check_fqdn_available(db: Session, fqdn: str, user_id: str, now: datetime) -> None:
    """Raise ConflictError if the fqdn is leased or held by another buyer's checkout."""
    if fqdn_is_taken(db, fqdn):
        raise ConflictError(f"{fqdn} is not available")

    cutoff = now - timedelta(minutes=settings.CHECKOUT_HOLD_MINUTES)
    reserved = (
        db.query(PendingOrder.id)
        .filter(
            PendingOrder.fqdn == fqdn,
            PendingOrder.status == PendingOrderStatus.PENDING,
            PendingOrder.user_id != user_id,
            PendingOrder.created_at >= cutoff,
        )
        .first()
    )
    if reserved:
        raise ConflictError(f"{fqdn} is reserved by another checkout")


def create_checkout_order(
    db: Session,
    gateway: PaymentGateway,
    user_id: str,
    email: Optional[str],
    fqdn: str,
    amount: Decimal,
    now: datetime,
    plan_code: Optional[str] = None,
    domain_type: str = "personal",
    return_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict:
    check_fqdn_available(db, fqdn, user_id, now)

    processor_order = gateway.create_order(
        amount=amount,
        currency=settings.DEFAULT_CURRENCY,
        reference_id=fqdn,
        description=f"Domain registration: {fqdn}",
        return_url=return_url,
        cancel_url=cancel_url,
    )

    pending = PendingOrder(
        user_id=user_id,
        email=email,
        fqdn=fqdn,
        amount=amount,
        currency=settings.DEFAULT_CURRENCY,
        plan_code=plan_code,
        domain_type=domain_type,
        external_order_id=processor_order.order_id,
        status=PendingOrderStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(pending)
    db.commit()

    logger.info(f"[Checkout] Order {processor_order.order_id} created for {fqdn} (user {user_id})")
    return {
        "order_id": processor_order.order_id,
        "approve_url": processor_order.approve_url,
        "dev_mode": gateway.dev_mode,
    }


def create_subscription_checkout(
    db: Session,
    gateway: PaymentGateway,
    user_id: str,
    email: Optional[str],
    fqdn: str,
    amount: Decimal,
    plan_code: str,
    processor_plan_id: str,
    now: datetime,
    domain_type: str = "personal",
    return_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict:
    """Start a recurring lease.

    The processor subscription carries ``custom_id = "<user_id>|<fqdn>"``;
    the PendingOrder is keyed by the subscription id so the activation
    event can find it.
    """
    plan = db.query(Plan).filter(Plan.code == plan_code, Plan.is_active == True).first()
    if not plan:
        raise NotFoundError(f"Plan {plan_code} not found")

    check_fqdn_available(db, fqdn, user_id, now)

    subscription = gateway.create_subscription(
        processor_plan_id=processor_plan_id,
        custom_id=f"{user_id}|{fqdn}",
        return_url=return_url,
        cancel_url=cancel_url,
    )

    pending = PendingOrder(
        user_id=user_id,
        email=email,
        fqdn=fqdn,
        amount=amount,
        currency=settings.DEFAULT_CURRENCY,
        plan_code=plan.code,
        domain_type=domain_type,
        external_order_id=subscription.subscription_id,
        status=PendingOrderStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(pending)
    db.commit()

    logger.info(
        f"[Checkout] Subscription {subscription.subscription_id} created for {fqdn} "
        f"(user {user_id}, plan {plan.code})"
    )
    return {
        "subscription_id": subscription.subscription_id,
        "approve_url": subscription.approve_url,
        "dev_mode": gateway.dev_mode,
    }
