"""
Idempotent payment capture / fulfilment handler.

The processor delivers events at-least-once, possibly out of order and
concurrently. Replay safety rests on two things:
  - a dedupe row in webhook_events, unique on (provider, external_id),
    written in the same transaction as the fulfilment writes;
  - unique external order / transaction ids on orders.

A concurrent duplicate therefore fails at commit and is reported as a
replay once its dedupe row or order is found. Any other constraint
failure stores nothing and raises PersistenceError so the processor
redelivers. A capture for an fqdn leased in the meantime is recorded
as a refund_required order instead of a second live domain.

Activation of a captured domain happens after the fulfilment
commit; if it breaks, the domain is marked failed (compensating write)
and reconciliation can activate it later.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from domain.enums import (
    EVENT_TYPE_ALIASES,
    DomainStatus,
    OrderStatus,
    OrderType,
    PendingOrderStatus,
    SubscriptionStatus,
    TriggeredBy,
    WebhookEventType,
)
from domain.exceptions import NotFoundError, PersistenceError, ValidationError
from models import Customer, Domain, Order, PendingOrder, Plan, Subscription, WebhookEvent
from schemas import EventEnvelope, payment_event_adapter
from services.ledger_store import (
    activate_domain,
    fqdn_is_taken,
    get_domain,
    mark_activation_failed,
    record_lifecycle_event,
    schedule_notifications,
)
from services.payment_gateway import parse_processor_datetime

logger = logging.getLogger(__name__)

PROVIDER = "paypal"
DEFAULT_PLAN_CODE = "prime"


@dataclass
class Fulfilment:
    """Outcome of one event handler, before commit."""
    result: dict
    activate_domain_id: Optional[int] = None


def canonical_event_type(event_type: str) -> str:
    return EVENT_TYPE_ALIASES.get(event_type, event_type)


def parse_event(payload: dict):
    """Validate a delivery.

    Returns the typed event for known event types, or the bare envelope
    for unknown ones.

    Raises:
        ValidationError: envelope or resource does not match its schema.
    """
    try:
        envelope = EventEnvelope.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed event envelope: {e.errors()[0]['msg']}") from e

    if canonical_event_type(envelope.event_type) not in set(WebhookEventType):
        return envelope

    try:
        return payment_event_adapter.validate_python(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"Invalid {envelope.event_type} payload at {location}: {first['msg']}") from e


def resolve_customer(db: Session, user_id: str, email: Optional[str]) -> Customer:
    """Find the customer for an external user id, creating it on first sight."""
    customer = db.query(Customer).filter(Customer.user_id == user_id).first()
    if customer:
        if email and not customer.email:
            customer.email = email
        return customer

    customer = Customer(user_id=user_id, email=email)
    db.add(customer)
    db.flush()
    logger.info(f"Customer created for user {user_id}")
    return customer


def _find_pending_order(db: Session, external_order_id: str) -> PendingOrder:
    pending = (
        db.query(PendingOrder)
        .filter(PendingOrder.external_order_id == external_order_id)
        .first()
    )
    if not pending:
        raise NotFoundError(f"Pending order not found for processor order {external_order_id}")
    return pending


def _find_subscription(db: Session, external_subscription_id: str) -> Subscription:
    subscription = (
        db.query(Subscription)
        .filter(Subscription.external_subscription_id == external_subscription_id)
        .first()
    )
    if not subscription:
        raise NotFoundError(f"Subscription not found: {external_subscription_id}")
    return subscription


def _create_domain(
    db: Session,
    customer: Customer,
    pending: PendingOrder,
    status: str,
    now: datetime,
    notes: str,
) -> Domain:
    expires_at = now + timedelta(days=settings.REGISTRATION_PERIOD_DAYS)
    domain = Domain(
        fqdn=pending.fqdn,
        customer_id=customer.id,
        domain_type=pending.domain_type or "personal",
        status=status,
        expires_at=expires_at,
        activated_at=now if status == DomainStatus.ACTIVE else None,
        is_transferable=True,
        created_at=now,
        updated_at=now,
    )
    db.add(domain)
    db.flush()
    record_lifecycle_event(db, domain.id, None, status, TriggeredBy.SYSTEM, notes, now)
    return domain


def _flag_for_refund(
    db: Session,
    customer: Customer,
    order_type: str,
    fqdn: str,
    now: datetime,
    external_order_id: str,
    external_transaction_id: Optional[str],
    amount: Decimal,
    currency: str,
) -> Order:
    """Record a payment whose fqdn was leased to someone else in the meantime."""
    order = Order(
        customer_id=customer.id,
        order_type=order_type,
        external_order_id=external_order_id,
        external_transaction_id=external_transaction_id,
        amount=amount,
        currency=currency,
        status=OrderStatus.REFUND_REQUIRED,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()
    logger.error(
        f"[Capture] {fqdn} already leased; order {order.id} ({external_order_id}) "
        f"for customer {customer.id} needs a refund"
    )
    return order


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------

def _handle_capture(db: Session, event, now: datetime, completed: bool) -> Fulfilment:
    resource = event.resource
    processor_order_id = resource.processor_order_id

    order = db.query(Order).filter(Order.external_order_id == processor_order_id).first()
    if order:
        # A previous event for the same checkout already recorded the order
        if completed and order.status == OrderStatus.PENDING:
            order.status = OrderStatus.COMPLETED
            order.completed_at = now
            order.external_transaction_id = order.external_transaction_id or resource.id
            logger.info(f"[Capture] Order {order.id} completed by later capture event")
            return Fulfilment(
                result={"success": True, "order_id": order.id, "domain_id": order.domain_id},
                activate_domain_id=order.domain_id,
            )
        return Fulfilment(result={
            "success": True,
            "order_id": order.id,
            "domain_id": order.domain_id,
            "message": "Order already recorded",
        })

    pending = _find_pending_order(db, processor_order_id)
    pending.status = PendingOrderStatus.COMPLETED

    customer = resolve_customer(db, pending.user_id, pending.email)

    amount = resource.amount.value if resource.amount else Decimal(pending.amount)
    currency = resource.amount.currency_code if resource.amount else pending.currency

    if fqdn_is_taken(db, pending.fqdn):
        order = _flag_for_refund(
            db, customer, OrderType.REGISTRATION, pending.fqdn, now,
            external_order_id=processor_order_id,
            external_transaction_id=resource.id,
            amount=amount,
            currency=currency,
        )
        return Fulfilment(result={
            "success": True,
            "order_id": order.id,
            "message": f"{pending.fqdn} is no longer available, order flagged for refund",
        })

    domain = _create_domain(
        db, customer, pending, DomainStatus.PENDING, now,
        notes="Domain created from captured payment" if completed else "Domain created, capture pending",
    )
    order = Order(
        customer_id=customer.id,
        domain_id=domain.id,
        order_type=OrderType.REGISTRATION,
        external_order_id=processor_order_id,
        external_transaction_id=resource.id,
        amount=amount,
        currency=currency,
        status=OrderStatus.COMPLETED if completed else OrderStatus.PENDING,
        completed_at=now if completed else None,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()

    logger.info(f"[Capture] Order {order.id} recorded for {pending.fqdn} (domain {domain.id})")
    return Fulfilment(
        result={"success": True, "order_id": order.id, "domain_id": domain.id},
        activate_domain_id=domain.id if completed else None,
    )


def handle_capture_completed(db: Session, event, now: datetime) -> Fulfilment:
    return _handle_capture(db, event, now, completed=True)


def handle_capture_pending(db: Session, event, now: datetime) -> Fulfilment:
    return _handle_capture(db, event, now, completed=False)


def handle_subscription_activated(db: Session, event, now: datetime) -> Fulfilment:
    resource = event.resource
    pending = _find_pending_order(db, resource.id)
    if pending.fqdn != resource.fqdn:
        raise ValidationError(
            f"custom_id domain {resource.fqdn} does not match pending order domain {pending.fqdn}"
        )

    existing = (
        db.query(Subscription)
        .filter(Subscription.external_subscription_id == resource.id)
        .first()
    )
    if existing:
        return Fulfilment(result={
            "success": True,
            "subscription_id": existing.id,
            "message": "Subscription already recorded",
        })
    recorded = db.query(Order).filter(Order.external_order_id == resource.id).first()
    if recorded:
        return Fulfilment(result={
            "success": True,
            "order_id": recorded.id,
            "domain_id": recorded.domain_id,
            "message": "Order already recorded",
        })

    pending.status = PendingOrderStatus.COMPLETED
    customer = resolve_customer(db, resource.user_id, pending.email)

    if fqdn_is_taken(db, pending.fqdn):
        # No Subscription row: the processor subscription must be cancelled with the refund
        order = _flag_for_refund(
            db, customer, OrderType.SUBSCRIPTION, pending.fqdn, now,
            external_order_id=resource.id,
            external_transaction_id=None,
            amount=pending.amount,
            currency=pending.currency,
        )
        return Fulfilment(result={
            "success": True,
            "order_id": order.id,
            "message": f"{pending.fqdn} is no longer available, order flagged for refund",
        })

    plan_code = pending.plan_code or DEFAULT_PLAN_CODE
    plan = db.query(Plan).filter(Plan.code == plan_code).first()

    order = Order(
        customer_id=customer.id,
        order_type=OrderType.SUBSCRIPTION,
        external_order_id=resource.id,
        amount=pending.amount,
        currency=pending.currency,
        status=OrderStatus.COMPLETED,
        completed_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(order)

    domain = _create_domain(
        db, customer, pending, DomainStatus.ACTIVE, now,
        notes="Subscription activated, domain active",
    )
    order.domain_id = domain.id
    schedule_notifications(db, domain.id, domain.expires_at, now)

    subscription = Subscription(
        customer_id=customer.id,
        plan_id=plan.id if plan else None,
        external_subscription_id=resource.id,
        status=SubscriptionStatus.ACTIVE,
        started_at=parse_processor_datetime(resource.start_time) or now,
        next_billing_date=parse_processor_datetime(
            resource.billing_info.next_billing_time if resource.billing_info else None
        ),
        created_at=now,
        updated_at=now,
    )
    db.add(subscription)
    db.flush()

    logger.info(
        f"[Subscription Activated] Order {order.id}, domain {domain.id}, subscription {subscription.id}"
    )
    return Fulfilment(result={
        "success": True,
        "order_id": order.id,
        "domain_id": domain.id,
        "subscription_id": subscription.id,
    })


def handle_subscription_payment(db: Session, event, now: datetime) -> Fulfilment:
    sale = event.resource
    subscription = _find_subscription(db, sale.billing_agreement_id)
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.updated_at = now

    result = {"success": True, "subscription_id": subscription.id}

    if sale.amount is not None:
        order = db.query(Order).filter(Order.external_transaction_id == sale.id).first()
        if order is None:
            order = Order(
                customer_id=subscription.customer_id,
                order_type=OrderType.RENEWAL,
                external_transaction_id=sale.id,
                amount=sale.amount.total,
                currency=sale.amount.currency,
                status=OrderStatus.COMPLETED,
                completed_at=now,
                created_at=now,
                updated_at=now,
            )
            db.add(order)
            db.flush()
        result["order_id"] = order.id

    logger.info(f"[Subscription Payment] Subscription {sale.billing_agreement_id} payment recorded")
    return Fulfilment(result=result)


def handle_payment_failed(db: Session, event, now: datetime) -> Fulfilment:
    subscription = _find_subscription(db, event.resource.id)
    subscription.status = SubscriptionStatus.PAST_DUE
    subscription.updated_at = now
    logger.warning(f"[Payment Failed] Subscription {event.resource.id} marked past_due")
    return Fulfilment(result={"success": True, "subscription_id": subscription.id})


def handle_subscription_cancelled(db: Session, event, now: datetime) -> Fulfilment:
    subscription = _find_subscription(db, event.resource.id)
    subscription.status = SubscriptionStatus.CANCELLED
    subscription.cancelled_at = now
    subscription.updated_at = now
    logger.info(f"[Subscription Cancelled] Subscription {event.resource.id} cancelled")
    return Fulfilment(result={"success": True, "subscription_id": subscription.id})


EVENT_HANDLERS: dict[str, Callable[[Session, object, datetime], Fulfilment]] = {
    WebhookEventType.CAPTURE_COMPLETED: handle_capture_completed,
    WebhookEventType.CAPTURE_PENDING: handle_capture_pending,
    WebhookEventType.SUBSCRIPTION_ACTIVATED: handle_subscription_activated,
    WebhookEventType.SUBSCRIPTION_PAYMENT: handle_subscription_payment,
    WebhookEventType.PAYMENT_FAILED: handle_payment_failed,
    WebhookEventType.SUBSCRIPTION_CANCELLED: handle_subscription_cancelled,
    WebhookEventType.SUBSCRIPTION_SUSPENDED: handle_subscription_cancelled,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _already_processed(db: Session, event_id: str) -> bool:
    return (
        db.query(WebhookEvent.id)
        .filter(WebhookEvent.provider == PROVIDER, WebhookEvent.external_id == event_id)
        .first()
        is not None
    )


def _recorded_order(db: Session, event_type: str, event) -> Optional[Order]:
    """The Order this event would have written, if one is already stored."""
    resource = getattr(event, "resource", None)
    if event_type in (WebhookEventType.CAPTURE_COMPLETED, WebhookEventType.CAPTURE_PENDING):
        condition = Order.external_order_id == resource.processor_order_id
    elif event_type == WebhookEventType.SUBSCRIPTION_ACTIVATED:
        condition = Order.external_order_id == resource.id
    elif event_type == WebhookEventType.SUBSCRIPTION_PAYMENT:
        condition = Order.external_transaction_id == resource.id
    else:
        return None
    return db.query(Order).filter(condition).first()


def activate_after_capture(db: Session, domain_id: int, now: datetime) -> str:
    """Activate a freshly captured domain; mark it failed if that breaks.

    Returns the domain's status afterwards.
    """
    domain = get_domain(db, domain_id)
    try:
        activate_domain(db, domain, now)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[Capture] Activation failed for domain {domain_id}: {e}")
        try:
            mark_activation_failed(db, domain, now, str(e))
            db.commit()
        except SQLAlchemyError as comp_err:
            db.rollback()
            logger.error(f"[Capture] Could not mark domain {domain_id} failed: {comp_err}")
    db.refresh(domain)
    return domain.status


def handle_webhook_event(db: Session, payload: dict, now: datetime) -> dict:
    """Process one processor delivery.

    Returns a result dict ``{success, order_id?, domain_id?,
    subscription_id?, message?}``.

    Raises:
        ValidationError: malformed payload.
        NotFoundError: referenced pending order / subscription is absent.
        PersistenceError: the store rejected the writes; nothing was recorded.
    """
    event = parse_event(payload)
    event_type = canonical_event_type(event.event_type)

    if _already_processed(db, event.id):
        logger.info(f"[Webhook] Event {event.id} already processed, skipping")
        return {"success": True, "message": "Event already processed"}

    handler = EVENT_HANDLERS.get(event_type)
    try:
        if handler is None:
            logger.info(f"[Webhook] Unhandled event type: {event.event_type}")
            fulfilment = Fulfilment(result={"success": True, "message": "Event received"})
        else:
            logger.info(f"[Webhook] Processing {event_type} ({event.id})")
            fulfilment = handler(db, event, now)

        db.add(WebhookEvent(
            provider=PROVIDER,
            external_id=event.id,
            event_type=event_type,
            payload=payload,
            received_at=now,
        ))
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if _already_processed(db, event.id):
            logger.info(f"[Webhook] Event {event.id} committed by a concurrent delivery")
            return {"success": True, "message": "Event already processed"}
        order = _recorded_order(db, event_type, event)
        if order is not None:
            logger.info(f"[Webhook] Order {order.id} for event {event.id} committed by a concurrent delivery")
            return {
                "success": True,
                "order_id": order.id,
                "domain_id": order.domain_id,
                "message": "Order already recorded",
            }
        # Nothing of this event was stored: the processor must redeliver
        raise PersistenceError(f"Could not record event {event.id}: {e.orig}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not record event {event.id}: {e}") from e
    except Exception:
        db.rollback()
        raise

    result = dict(fulfilment.result)
    if fulfilment.activate_domain_id is not None:
        result["domain_status"] = activate_after_capture(db, fulfilment.activate_domain_id, now)
    return result
