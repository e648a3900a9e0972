"""
Domain ownership transfer between two customers.

Flow:
    initiate        sender opens a pending Transfer (fees fixed at this point)
    create_payment  recipient gets a processor order for the total
    complete        the transfer's own processor order captured for the
                    full total, then in one transaction:
                    owner reassigned (CAS on previous owner and ACTIVE),
                    transfer lock reset, transfer Order recorded,
                    Transfer marked completed
    cancel          sender or recipient voids a pending Transfer

At most one pending Transfer per domain: checked here and enforced by the
partial unique index on domain_transfers.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from domain.enums import DomainStatus, OrderStatus, OrderType, TransferStatus, TriggeredBy
from domain.exceptions import ConflictError, NotFoundError, ValidationError
from models import Customer, Domain, Order, Transfer
from services.ledger_store import record_lifecycle_event
from services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


def _get_customer_by_user(db: Session, user_id: str) -> Customer:
    customer = db.query(Customer).filter(Customer.user_id == user_id).first()
    if not customer:
        raise NotFoundError(f"Customer not found for user {user_id}")
    return customer


def _get_transfer(db: Session, transfer_id: int) -> Transfer:
    transfer = db.query(Transfer).filter(Transfer.id == transfer_id).first()
    if not transfer:
        raise NotFoundError(f"Transfer {transfer_id} not found")
    return transfer


def _require_pending(transfer: Transfer) -> None:
    if transfer.status != TransferStatus.PENDING:
        raise ConflictError(f"Transfer {transfer.id} is {transfer.status}, not pending")


def check_transferable(domain: Domain, sender: Customer, now: datetime) -> None:
    """Raise ConflictError unless the domain may leave ``sender`` right now."""
    if domain.customer_id != sender.id:
        raise ConflictError(f"Domain {domain.id} is not owned by the sender")
    if domain.status != DomainStatus.ACTIVE:
        raise ConflictError(f"Only active domains can be transferred (status={domain.status})")
    if not domain.is_transferable:
        raise ConflictError(f"Domain {domain.fqdn} is not transferable")
    if domain.transfer_lock_until and domain.transfer_lock_until > now:
        raise ConflictError(
            f"Domain {domain.fqdn} is transfer-locked until {domain.transfer_lock_until.isoformat()}"
        )


def initiate_transfer(
    db: Session,
    sender_user_id: str,
    domain_id: int,
    to_email: str,
    now: datetime,
) -> Transfer:
    sender = _get_customer_by_user(db, sender_user_id)

    domain = db.query(Domain).filter(Domain.id == domain_id).first()
    if not domain:
        raise NotFoundError(f"Domain {domain_id} not found")

    recipient = db.query(Customer).filter(func.lower(Customer.email) == to_email.strip().lower()).first()
    if not recipient:
        raise NotFoundError(f"Recipient {to_email} has no customer record")
    if recipient.id == sender.id:
        raise ValidationError("A domain cannot be transferred to its current owner")

    check_transferable(domain, sender, now)

    open_transfer = (
        db.query(Transfer.id)
        .filter(Transfer.domain_id == domain.id, Transfer.status == TransferStatus.PENDING)
        .first()
    )
    if open_transfer:
        raise ConflictError(f"Domain {domain.fqdn} already has a pending transfer")

    transfer_fee = Decimal(settings.TRANSFER_FEE)
    new_period_fee = Decimal(settings.TRANSFER_NEW_PERIOD_FEE)
    transfer = Transfer(
        domain_id=domain.id,
        from_customer_id=sender.id,
        to_customer_id=recipient.id,
        transfer_fee=transfer_fee,
        new_period_fee=new_period_fee,
        total_amount=transfer_fee + new_period_fee,
        currency=settings.DEFAULT_CURRENCY,
        status=TransferStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(transfer)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"Domain {domain_id} already has a pending transfer") from e
    db.refresh(transfer)

    logger.info(f"[Transfer] {transfer.id} initiated for domain {domain_id} → customer {recipient.id}")
    return transfer


def create_transfer_payment(
    db: Session,
    gateway: PaymentGateway,
    recipient_user_id: str,
    transfer_id: int,
    return_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict:
    """Create the processor order the recipient pays. Recipient only."""
    recipient = _get_customer_by_user(db, recipient_user_id)
    transfer = _get_transfer(db, transfer_id)
    if transfer.to_customer_id != recipient.id:
        raise NotFoundError(f"Transfer {transfer_id} not found")
    _require_pending(transfer)

    fqdn = transfer.domain.fqdn
    processor_order = gateway.create_order(
        amount=Decimal(transfer.total_amount),
        currency=transfer.currency,
        reference_id=f"transfer-{transfer.id}",
        description=f"Domain transfer: {fqdn}",
        return_url=return_url,
        cancel_url=cancel_url,
    )

    transfer.external_order_id = processor_order.order_id
    db.commit()

    logger.info(f"[Transfer] {transfer.id} payment order {processor_order.order_id}")
    return {
        "transfer_id": transfer.id,
        "order_id": processor_order.order_id,
        "approve_url": processor_order.approve_url,
    }


def complete_transfer(
    db: Session,
    gateway: PaymentGateway,
    recipient_user_id: str,
    transfer_id: int,
    processor_order_id: str,
    now: datetime,
) -> Transfer:
    recipient = _get_customer_by_user(db, recipient_user_id)
    transfer = _get_transfer(db, transfer_id)
    if transfer.to_customer_id != recipient.id:
        raise NotFoundError(f"Transfer {transfer_id} not found")
    _require_pending(transfer)
    if not transfer.external_order_id:
        raise ConflictError(f"Transfer {transfer_id} has no payment order yet")
    if transfer.external_order_id != processor_order_id:
        raise ValidationError(f"Processor order {processor_order_id} does not belong to transfer {transfer_id}")

    capture = gateway.capture_order(processor_order_id)
    if not capture.is_completed:
        raise ConflictError(f"Processor order {processor_order_id} not completed (status={capture.status})")

    expected = Decimal(transfer.total_amount)
    if capture.amount is None or abs(capture.amount - expected) > AMOUNT_TOLERANCE:
        logger.error(
            f"[Transfer] {transfer_id}: payment {processor_order_id} captured {capture.amount} "
            f"but {expected} is due; manual refund required"
        )
        raise ConflictError(
            f"Captured amount {capture.amount} does not match transfer total {expected}"
        )

    domain_id = transfer.domain_id
    previous_owner = transfer.from_customer_id

    # Owner changes only if the domain is still active and still the sender's
    rowcount = (
        db.query(Domain)
        .filter(
            Domain.id == domain_id,
            Domain.customer_id == previous_owner,
            Domain.status == DomainStatus.ACTIVE,
        )
        .update(
            {
                "customer_id": recipient.id,
                "transfer_lock_until": now + timedelta(days=settings.TRANSFER_LOCK_DAYS),
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    if rowcount == 0:
        db.rollback()
        logger.error(
            f"[Transfer] {transfer_id}: payment {processor_order_id} captured but domain {domain_id} "
            f"changed owner or status; manual refund required"
        )
        raise ConflictError(f"Domain {domain_id} is no longer active with its original owner")

    order = Order(
        customer_id=recipient.id,
        domain_id=domain_id,
        order_type=OrderType.TRANSFER,
        external_order_id=processor_order_id,
        external_transaction_id=capture.capture_id,
        amount=capture.amount,
        currency=capture.currency,
        status=OrderStatus.COMPLETED,
        completed_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()

    record_lifecycle_event(
        db, domain_id, DomainStatus.ACTIVE, DomainStatus.ACTIVE, TriggeredBy.HUMAN,
        f"Ownership transferred from customer {previous_owner} to {recipient.id}", now,
    )

    transfer.status = TransferStatus.COMPLETED
    transfer.order_id = order.id
    transfer.external_order_id = processor_order_id
    transfer.completed_at = now
    transfer.updated_at = now
    db.commit()
    db.refresh(transfer)

    logger.info(f"[Transfer] {transfer_id} completed, domain {domain_id} now owned by {recipient.id}")
    return transfer


def cancel_transfer(db: Session, user_id: str, transfer_id: int, now: datetime) -> Transfer:
    """Void a pending transfer. Sender or recipient only."""
    customer = _get_customer_by_user(db, user_id)
    transfer = _get_transfer(db, transfer_id)
    if customer.id not in (transfer.from_customer_id, transfer.to_customer_id):
        raise NotFoundError(f"Transfer {transfer_id} not found")

    rowcount = (
        db.query(Transfer)
        .filter(Transfer.id == transfer_id, Transfer.status == TransferStatus.PENDING)
        .update(
            {"status": TransferStatus.CANCELLED, "cancelled_at": now, "updated_at": now},
            synchronize_session=False,
        )
    )
    if rowcount == 0:
        db.rollback()
        db.refresh(transfer)
        raise ConflictError(f"Transfer {transfer_id} is {transfer.status}, not pending")
    db.commit()
    db.refresh(transfer)

    logger.info(f"[Transfer] {transfer_id} cancelled by customer {customer.id}")
    return transfer
