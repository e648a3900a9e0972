"""
Payment reconciliation engine.

Diffs the processor's transaction ledger (ground truth) against internal
orders for a trailing window. For each successful processor transaction:

  missing_in_db    no order carries the transaction id     -> logged, unresolved
  amount_mismatch  amounts differ by more than 0.01        -> logged, never corrected
  status_mismatch  order still pending                     -> auto-healed:
                   order completed, linked domain activated

The run row is written as ``running`` before any work so an aborted run
still leaves a trace. A failed processor fetch marks the run ``failed``
and reconciles nothing.
"""

import logging
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from domain.enums import DiscrepancyType, OrderStatus, RunStatus, TriggeredBy
from domain.exceptions import ExternalServiceError, ValidationError
from models import Discrepancy, Domain, Order, ReconciliationRun
from services.ledger_store import activate_domain
from services.payment_gateway import ExternalTransaction, PaymentGateway

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _fail_run(db: Session, run: ReconciliationRun, message: str, started: float, now: datetime) -> None:
    run.status = RunStatus.FAILED
    run.error_message = message
    run.execution_time_ms = _elapsed_ms(started)
    run.updated_at = now
    db.commit()


def _heal_pending_order(db: Session, order: Order, txn: ExternalTransaction, now: datetime) -> bool:
    """Complete a pending order and activate its domain. Caller commits.

    Returns False when the order was completed concurrently.
    """
    rowcount = (
        db.query(Order)
        .filter(Order.id == order.id, Order.status == OrderStatus.PENDING)
        .update(
            {
                "status": OrderStatus.COMPLETED,
                "completed_at": txn.updated_at or now,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    db.expire(order)
    if rowcount == 0:
        return False

    if order.domain_id is not None:
        domain = db.query(Domain).filter(Domain.id == order.domain_id).first()
        if domain is not None and activate_domain(
            db, domain, now, TriggeredBy.SYSTEM, notes="Activated by payment reconciliation",
        ):
            logger.info(f"[Reconciliation] Auto-activated domain {domain.id} for order {order.id}")
    return True


def _check_transaction(
    db: Session,
    run: ReconciliationRun,
    txn: ExternalTransaction,
    orders_by_txn: dict[str, Order],
    now: datetime,
) -> Optional[Discrepancy]:
    """Compare one successful processor transaction with the ledger."""
    order = orders_by_txn.get(txn.transaction_id)

    if order is None:
        logger.warning(f"[Reconciliation] Missing in DB: {txn.transaction_id}")
        return Discrepancy(
            reconciliation_id=run.id,
            discrepancy_type=DiscrepancyType.MISSING_IN_DB,
            external_transaction_id=txn.transaction_id,
            external_amount=txn.amount,
            external_status=txn.status,
            notes="Payment completed at the processor but not found in database",
            auto_resolved=False,
            created_at=now,
        )

    internal_amount = Decimal(order.amount)
    if abs(txn.amount - internal_amount) > AMOUNT_TOLERANCE:
        logger.warning(
            f"[Reconciliation] Amount mismatch on {txn.transaction_id}: "
            f"processor={txn.amount} db={internal_amount}"
        )
        return Discrepancy(
            reconciliation_id=run.id,
            discrepancy_type=DiscrepancyType.AMOUNT_MISMATCH,
            external_transaction_id=txn.transaction_id,
            external_amount=txn.amount,
            external_status=txn.status,
            order_id=order.id,
            internal_amount=internal_amount,
            internal_status=order.status,
            notes=f"Amount mismatch: processor={txn.amount}, db={internal_amount}",
            auto_resolved=False,
            created_at=now,
        )

    if order.status == OrderStatus.PENDING:
        order_id = order.id
        if not _heal_pending_order(db, order, txn, now):
            return None
        logger.info(f"[Reconciliation] Auto-resolved status mismatch: {txn.transaction_id}")
        return Discrepancy(
            reconciliation_id=run.id,
            discrepancy_type=DiscrepancyType.STATUS_MISMATCH,
            external_transaction_id=txn.transaction_id,
            external_amount=txn.amount,
            external_status=txn.status,
            order_id=order_id,
            internal_amount=internal_amount,
            internal_status=OrderStatus.PENDING,
            notes="Payment completed at the processor but pending in database; order completed",
            auto_resolved=True,
            created_at=now,
        )

    return None


def reconcile_payments(
    db: Session,
    gateway: PaymentGateway,
    now: datetime,
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
) -> dict:
    """Run one reconciliation over [window_start, window_end].

    Defaults to the trailing RECONCILIATION_WINDOW_HOURS ending at ``now``.
    """
    started = time.perf_counter()
    window_end = window_end or now
    window_start = window_start or window_end - timedelta(hours=settings.RECONCILIATION_WINDOW_HOURS)
    if window_start >= window_end:
        raise ValidationError("window_start must be before window_end")

    run = ReconciliationRun(
        window_start=window_start,
        window_end=window_end,
        status=RunStatus.RUNNING,
        created_at=now,
        updated_at=now,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    run_id = run.id

    logger.info(f"[Reconciliation] Run {run_id}: {window_start.isoformat()} → {window_end.isoformat()}")

    try:
        transactions = gateway.list_transactions(window_start, window_end)
    except ExternalServiceError as e:
        _fail_run(db, run, str(e), started, now)
        logger.error(f"[Reconciliation] Run {run_id} failed: processor fetch error ({e}, retryable={e.retryable})")
        return {"success": False, "run_id": run_id, "error": str(e)}
    except Exception as e:
        _fail_run(db, run, f"Unexpected error fetching processor ledger: {e!r}", started, now)
        logger.exception(f"[Reconciliation] Run {run_id} failed while fetching the processor ledger")
        raise

    orders = (
        db.query(Order)
        .filter(Order.created_at >= window_start, Order.created_at <= window_end)
        .all()
    )
    orders_by_txn = {o.external_transaction_id: o for o in orders if o.external_transaction_id}

    logger.info(
        f"[Reconciliation] Run {run_id}: {len(transactions)} processor transactions, "
        f"{len(orders)} internal orders"
    )

    discrepancies: list[Discrepancy] = []
    errors: list[dict] = []
    for txn in transactions:
        if not txn.is_successful:
            continue
        try:
            discrepancy = _check_transaction(db, run, txn, orders_by_txn, now)
            if discrepancy is not None:
                db.add(discrepancy)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[Reconciliation] Could not reconcile {txn.transaction_id}: {e}")
            errors.append({"external_transaction_id": txn.transaction_id, "error": str(e)})
            continue
        if discrepancy is not None:
            discrepancies.append(discrepancy)

    resolved = sum(1 for d in discrepancies if d.auto_resolved)
    unresolved = len(discrepancies) - resolved
    execution_ms = _elapsed_ms(started)

    db.refresh(run)
    run.external_checked = len(transactions)
    run.internal_checked = len(orders)
    run.discrepancies_found = len(discrepancies)
    run.discrepancies_resolved = resolved
    run.execution_time_ms = execution_ms
    run.status = RunStatus.COMPLETED
    run.updated_at = now
    db.commit()

    if unresolved:
        logger.error(f"[Reconciliation] {unresolved} unresolved payment discrepancies in run {run_id}")
    logger.info(f"[Reconciliation] Run {run_id} completed in {execution_ms}ms")

    return {
        "success": True,
        "run_id": run_id,
        "summary": {
            "external_checked": len(transactions),
            "internal_checked": len(orders),
            "discrepancies_found": len(discrepancies),
            "auto_resolved": resolved,
            "unresolved": unresolved,
            "execution_time_ms": execution_ms,
        },
        "discrepancies": [
            {
                "type": d.discrepancy_type,
                "external_transaction_id": d.external_transaction_id,
                "order_id": d.order_id,
                "auto_resolved": d.auto_resolved,
            }
            for d in discrepancies
        ],
        "errors": errors,
    }
