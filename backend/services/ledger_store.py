"""
Ledger store operations shared by the lifecycle engine, the capture handler,
the reconciliation engine and the transfer workflow.

Every domain status change goes through transition_domain_status(), which
checks the move against the lifecycle FSM and then performs a
compare-and-swap UPDATE (``WHERE id = ? AND status = ?``). A lost race
returns False instead of raising, so overlapping scheduled runs degrade
to no-ops. Each successful change appends one LifecycleEvent in the same
transaction. Callers own the commit.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from config import settings
from domain.enums import DomainStatus, NotificationStatus, TriggeredBy
from domain.exceptions import ConflictError, NotFoundError
from domain.lifecycle import (
    ACTIVATABLE_STATES,
    HOLD_STATES,
    is_valid_transition,
    milestone_schedule,
)
from models import Domain, LifecycleEvent, Notification

logger = logging.getLogger(__name__)

# A failed domain was paid for and awaits repair, so it still holds its fqdn
LIVE_STATUSES = [s for s in DomainStatus if s != DomainStatus.RELEASED]


def fqdn_is_taken(db: Session, fqdn: str) -> bool:
    """True while any domain row for ``fqdn`` has not been released."""
    return (
        db.query(Domain.id)
        .filter(Domain.fqdn == fqdn, Domain.status.in_(LIVE_STATUSES))
        .first()
        is not None
    )


def get_domain(db: Session, domain_id: int) -> Domain:
    domain = db.query(Domain).filter(Domain.id == domain_id).first()
    if not domain:
        raise NotFoundError(f"Domain {domain_id} not found")
    return domain


def record_lifecycle_event(
    db: Session,
    domain_id: int,
    old_status: Optional[str],
    new_status: str,
    triggered_by: str,
    notes: Optional[str],
    now: datetime,
) -> LifecycleEvent:
    """Append an audit row. Never updated or deleted afterwards."""
    event = LifecycleEvent(
        domain_id=domain_id,
        old_status=old_status,
        new_status=new_status,
        triggered_by=triggered_by,
        notes=notes,
        created_at=now,
    )
    db.add(event)
    return event


def transition_domain_status(
    db: Session,
    domain: Domain,
    expected_status: str,
    new_status: str,
    triggered_by: str,
    notes: Optional[str],
    now: datetime,
    values: Optional[dict] = None,
) -> bool:
    """Guarded status change.

    Returns True when this call moved the domain, False when the domain was
    no longer in ``expected_status`` (someone else got there first).

    Raises:
        ConflictError: the move is not an edge of the status graph.
    """
    domain_id = domain.id
    if not is_valid_transition(expected_status, new_status):
        raise ConflictError(
            f"Invalid transition for domain {domain_id}: {expected_status} -> {new_status}"
        )

    update_values = {"status": new_status, "updated_at": now}
    if values:
        update_values.update(values)

    rowcount = (
        db.query(Domain)
        .filter(Domain.id == domain_id, Domain.status == expected_status)
        .update(update_values, synchronize_session=False)
    )
    # The in-session instance may hold stale column values after a bulk UPDATE
    db.expire(domain)

    if rowcount == 0:
        logger.info(
            "Domain %s no longer in %s, skipping transition to %s",
            domain_id, expected_status, new_status,
        )
        return False

    record_lifecycle_event(db, domain_id, expected_status, new_status, triggered_by, notes, now)
    return True


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------

def activate_domain(
    db: Session,
    domain: Domain,
    now: datetime,
    triggered_by: str = TriggeredBy.SYSTEM,
    notes: str = "Payment confirmed, domain activated",
) -> bool:
    """Activate a domain that is pending or failed.

    Shared by the capture handler and the reconciliation engine. Both race
    on the same row; the CAS on the observed status means only one of them
    writes ``activated_at`` / ``expires_at``.
    """
    db.refresh(domain)
    observed = domain.status
    if observed not in ACTIVATABLE_STATES:
        return False

    expires_at = now + timedelta(days=settings.REGISTRATION_PERIOD_DAYS)
    moved = transition_domain_status(
        db, domain, observed, DomainStatus.ACTIVE, triggered_by, notes, now,
        values={
            "activated_at": now,
            "expires_at": expires_at,
            "suspension_reason": None,
        },
    )
    if moved:
        schedule_notifications(db, domain.id, expires_at, now)
        logger.info(f"Domain {domain.id} activated, expires at {expires_at.isoformat()}")
    return moved


def mark_activation_failed(db: Session, domain: Domain, now: datetime, reason: str) -> bool:
    """Compensating write when activation breaks: pending -> failed."""
    return transition_domain_status(
        db, domain, DomainStatus.PENDING, DomainStatus.FAILED,
        TriggeredBy.SYSTEM, f"Activation failed: {reason}", now,
    )


# ---------------------------------------------------------------------------
# Holds (set by external fraud / dispute collaborators)
# ---------------------------------------------------------------------------

def place_hold(db: Session, domain: Domain, hold: str, notes: Optional[str], now: datetime) -> bool:
    if hold not in HOLD_STATES:
        raise ConflictError(f"{hold} is not a hold status")
    db.refresh(domain)
    return transition_domain_status(
        db, domain, domain.status, hold, TriggeredBy.HUMAN,
        notes or f"Placed on {hold}", now,
        values={"suspension_reason": notes or hold},
    )


def clear_hold(db: Session, domain: Domain, notes: Optional[str], now: datetime) -> bool:
    """Return a held domain to the status it had before the hold."""
    db.refresh(domain)
    if domain.status not in HOLD_STATES:
        raise ConflictError(f"Domain {domain.id} is not on hold (status={domain.status})")

    entered_hold = (
        db.query(LifecycleEvent)
        .filter(
            LifecycleEvent.domain_id == domain.id,
            LifecycleEvent.new_status == domain.status,
        )
        .order_by(LifecycleEvent.id.desc())
        .first()
    )
    if not entered_hold or not entered_hold.old_status:
        raise ConflictError(f"Cannot determine the status before the hold for domain {domain.id}")

    return transition_domain_status(
        db, domain, domain.status, entered_hold.old_status, TriggeredBy.HUMAN,
        notes or "Hold cleared", now,
        values={"suspension_reason": None},
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def schedule_notifications(db: Session, domain_id: int, expires_at: datetime, now: datetime) -> int:
    """Create the milestone rows for one billing period. Idempotent."""
    existing = {
        (n.milestone, n.scheduled_for)
        for n in db.query(Notification.milestone, Notification.scheduled_for)
        .filter(Notification.domain_id == domain_id)
        .all()
    }

    created = 0
    for milestone, scheduled_for in milestone_schedule(expires_at):
        if (milestone, scheduled_for) in existing:
            continue
        db.add(Notification(
            domain_id=domain_id,
            milestone=milestone,
            scheduled_for=scheduled_for,
            status=NotificationStatus.PENDING,
            created_at=now,
        ))
        created += 1
    return created
