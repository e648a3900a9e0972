"""
Domain lifecycle engine.

Invoked by an external daily trigger (through the Scheduler). Each run:
  1. Sweeps every phase boundary and advances domains whose deadline has
     passed, one guarded transition per domain.
  2. Makes sure every active domain has its milestone notifications
     scheduled for the current billing period.
  3. Marks due notifications as sent and hands them to the dispatcher.

Safe to invoke repeatedly and concurrently: every write is a
compare-and-swap, so an overlapping run degrades to no-ops.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from domain.enums import DomainStatus, NotificationStatus, TriggeredBy
from domain.lifecycle import (
    DEADLINE_FIELDS,
    PHASE_ORDER,
    RELEASE_SUSPENSION_REASON,
    TRANSITION_REASONS,
    compute_phase_deadline,
    compute_transition,
)
from models import Domain, Notification
from services.ledger_store import schedule_notifications, transition_domain_status
from services.notification_dispatcher import LoggingNotificationDispatcher, NotificationDispatcher

logger = logging.getLogger(__name__)

# Latest phase first, so a domain moved earlier in the run is not picked up
# again by a later sweep: one phase per domain per run.
SWEEP_ORDER: list[str] = list(reversed(PHASE_ORDER[:-1]))


def find_due_domains(db: Session, phase: str, now: datetime) -> list[Domain]:
    """Domains in ``phase`` whose deadline is strictly in the past."""
    deadline_col = getattr(Domain, DEADLINE_FIELDS[phase])
    return (
        db.query(Domain)
        .filter(
            Domain.status == phase,
            deadline_col.isnot(None),
            deadline_col < now,
        )
        .order_by(Domain.id)
        .all()
    )


def advance_domain(db: Session, domain: Domain, expected_status: str, now: datetime) -> Optional[dict]:
    """Attempt one guarded phase transition and commit it.

    Returns the transition record, or None when the domain had already
    moved (lost race) or is not due.
    """
    domain_id = domain.id
    fqdn = domain.fqdn
    previous_deadline = getattr(domain, DEADLINE_FIELDS[expected_status])

    new_status = compute_transition(expected_status, previous_deadline, now)
    if new_status is None:
        return None

    values = {}
    if new_status == DomainStatus.RELEASED:
        values["customer_id"] = None
        values["suspension_reason"] = RELEASE_SUSPENSION_REASON
    else:
        values[DEADLINE_FIELDS[new_status]] = compute_phase_deadline(new_status, previous_deadline, now)

    reason = TRANSITION_REASONS[new_status]
    moved = transition_domain_status(
        db, domain, expected_status, new_status, TriggeredBy.SCHEDULER, reason, now, values=values,
    )
    if not moved:
        return None

    db.commit()
    logger.info(f"[Domain Lifecycle] {fqdn}: {expected_status} → {new_status}")
    return {
        "domain_id": domain_id,
        "fqdn": fqdn,
        "current_status": expected_status,
        "new_status": new_status,
        "reason": reason,
    }


def schedule_missing_notifications(db: Session, now: datetime) -> int:
    """Ensure every active domain has milestone rows for its billing period."""
    created = 0
    active = (
        db.query(Domain.id, Domain.expires_at)
        .filter(Domain.status == DomainStatus.ACTIVE, Domain.expires_at.isnot(None))
        .all()
    )
    for domain_id, expires_at in active:
        created += schedule_notifications(db, domain_id, expires_at, now)
    db.commit()
    if created:
        logger.info(f"[Domain Lifecycle] Scheduled {created} milestone notifications")
    return created


def deliver_due_notifications(
    db: Session,
    now: datetime,
    dispatcher: NotificationDispatcher,
    batch_size: int = 100,
) -> int:
    """Mark due pending notifications as sent and hand them off.

    Marking is a non-critical side effect: failures are logged and the
    notification stays pending for the next run.
    """
    due = (
        db.query(Notification, Domain.fqdn)
        .join(Domain, Domain.id == Notification.domain_id)
        .filter(
            Notification.status == NotificationStatus.PENDING,
            Notification.scheduled_for <= now,
        )
        .order_by(Notification.scheduled_for, Notification.id)
        .limit(batch_size)
        .all()
    )

    sent = 0
    for notification, fqdn in due:
        try:
            rowcount = (
                db.query(Notification)
                .filter(
                    Notification.id == notification.id,
                    Notification.status == NotificationStatus.PENDING,
                )
                .update(
                    {"status": NotificationStatus.SENT, "delivered_at": now},
                    synchronize_session=False,
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[Domain Lifecycle] Could not mark notification {notification.id} sent: {e}")
            continue

        if rowcount == 0:
            continue

        db.refresh(notification)
        sent += 1
        try:
            dispatcher.dispatch(notification, fqdn)
        except Exception as e:
            logger.error(f"[Domain Lifecycle] Dispatcher failed for notification {notification.id}: {e}")

    return sent


def run_daily_transitions(
    db: Session,
    now: datetime,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> dict:
    """Advance due domains and deliver due notifications.

    Returns:
        dict with timestamp, transitions_processed, notifications_sent,
        transitions list and errors list ({stage, error}).
    """
    dispatcher = dispatcher or LoggingNotificationDispatcher()
    transitions = []
    errors = []

    logger.info(f"[Domain Lifecycle] Starting run at {now.isoformat()}")

    for phase in SWEEP_ORDER:
        try:
            due = find_due_domains(db, phase, now)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[Domain Lifecycle] Query failed for stage {phase}: {e}")
            errors.append({"stage": phase, "error": str(e)})
            continue

        if due:
            logger.info(f"[Domain Lifecycle] Found {len(due)} domains due to leave {phase}")

        for domain in due:
            domain_id = domain.id
            try:
                result = advance_domain(db, domain, phase, now)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[Domain Lifecycle] Transition failed for domain {domain_id}: {e}")
                errors.append({"stage": phase, "error": f"domain {domain_id}: {e}"})
                continue
            if result:
                transitions.append(result)

    try:
        schedule_missing_notifications(db, now)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[Domain Lifecycle] Notification scheduling failed: {e}")
        errors.append({"stage": "notification_scheduling", "error": str(e)})

    notifications_sent = 0
    try:
        notifications_sent = deliver_due_notifications(
            db, now, dispatcher, batch_size=settings.NOTIFICATION_BATCH_SIZE,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[Domain Lifecycle] Notification delivery query failed: {e}")
        errors.append({"stage": "notifications", "error": str(e)})

    logger.info(
        f"[Domain Lifecycle] Completed: {len(transitions)} transitions, "
        f"{notifications_sent} notifications"
    )

    return {
        "timestamp": now.isoformat(),
        "transitions_processed": len(transitions),
        "notifications_sent": notifications_sent,
        "transitions": transitions,
        "errors": errors,
    }
