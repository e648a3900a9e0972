"""
domain/lifecycle.py — Domain lifecycle finite state machine.

The lifecycle FSM determines how a leased domain moves through its
time-boxed expiry phases once the billing period lapses. It is pure:
no ORM, no clock. The lifecycle engine and the ledger store call into it.

State Diagram:
    PENDING --> ACTIVE (payment captured, activation succeeded)
    PENDING --> FAILED (activation failed; reconciliation may re-activate)
    ACTIVE --> GRACE            at expires_at           (D+0)
    GRACE --> REDEMPTION        at grace_until          (D+15)
    REDEMPTION --> REGISTRY_HOLD at redemption_until    (D+45)
    REGISTRY_HOLD --> AUCTION   at registry_hold_until  (D+60)
    AUCTION --> PENDING_DELETE  at auction_until        (D+75)
    PENDING_DELETE --> RELEASED at pending_delete_until (D+80)
    ANY (except RELEASED) --> DISPUTE_HOLD / FRAUD_HOLD / UNPAID_HOLD (external)
    HOLD --> status before the hold (manual clear only)
    RELEASED --> (terminal, no transitions out)
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from domain.enums import DomainStatus

# ---------------------------------------------------------------------------
# Phase graph
# ---------------------------------------------------------------------------

PHASE_ORDER: list[str] = [
    DomainStatus.ACTIVE,
    DomainStatus.GRACE,
    DomainStatus.REDEMPTION,
    DomainStatus.REGISTRY_HOLD,
    DomainStatus.AUCTION,
    DomainStatus.PENDING_DELETE,
    DomainStatus.RELEASED,
]

# Length of each phase in days, measured from the end of the previous phase.
PHASE_DURATION_DAYS: dict[str, int] = {
    DomainStatus.GRACE: 15,
    DomainStatus.REDEMPTION: 30,
    DomainStatus.REGISTRY_HOLD: 15,
    DomainStatus.AUCTION: 15,
    DomainStatus.PENDING_DELETE: 5,
}

# Column holding the moment a domain must leave the given phase.
DEADLINE_FIELDS: dict[str, str] = {
    DomainStatus.ACTIVE: "expires_at",
    DomainStatus.GRACE: "grace_until",
    DomainStatus.REDEMPTION: "redemption_until",
    DomainStatus.REGISTRY_HOLD: "registry_hold_until",
    DomainStatus.AUCTION: "auction_until",
    DomainStatus.PENDING_DELETE: "pending_delete_until",
}

TRANSITION_REASONS: dict[str, str] = {
    DomainStatus.GRACE: "Billing period expired",
    DomainStatus.REDEMPTION: "Grace period expired",
    DomainStatus.REGISTRY_HOLD: "Redemption period expired",
    DomainStatus.AUCTION: "Registry hold expired, entering auction",
    DomainStatus.PENDING_DELETE: "Auction ended, no bids",
    DomainStatus.RELEASED: "Domain released to inventory",
}

HOLD_STATES: set[str] = {
    DomainStatus.DISPUTE_HOLD,
    DomainStatus.FRAUD_HOLD,
    DomainStatus.UNPAID_HOLD,
}

# Statuses the activation write may move to ACTIVE.
ACTIVATABLE_STATES: set[str] = {
    DomainStatus.PENDING,
    DomainStatus.FAILED,
}

RELEASE_SUSPENSION_REASON = "Released back to inventory"


# ---------------------------------------------------------------------------
# Notification milestones (signed day offsets relative to expires_at)
# ---------------------------------------------------------------------------

NOTIFICATION_MILESTONES: list[tuple[str, int]] = [
    ("D-14", -14),
    ("D-7", -7),
    ("D-3", -3),
    ("D-1", -1),
    ("D+1", 1),
    ("D+10", 10),
    ("D+16", 16),
    ("D+30", 30),
    ("D+45", 45),
    ("D+60", 60),
]


def milestone_schedule(expires_at: datetime) -> list[tuple[str, datetime]]:
    """Return (milestone_code, scheduled_for) pairs for a billing period end."""
    return [
        (code, expires_at + timedelta(days=offset))
        for code, offset in NOTIFICATION_MILESTONES
    ]


# ---------------------------------------------------------------------------
# Transition rules
# ---------------------------------------------------------------------------

def next_phase(status: str) -> Optional[str]:
    """The phase that follows ``status`` on the expiry path, or None."""
    if status not in PHASE_ORDER:
        return None
    idx = PHASE_ORDER.index(status)
    if idx + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[idx + 1]


def is_valid_transition(current_status: str, new_status: str) -> bool:
    """Check a move against the status graph.

    The expiry path only ever advances one phase. Holds can be entered from
    any live status and are left only by a manual clear back to a live
    status. RELEASED is terminal.
    """
    if current_status == DomainStatus.RELEASED:
        return False

    if new_status in HOLD_STATES:
        return current_status not in HOLD_STATES

    if current_status in HOLD_STATES:
        return new_status not in HOLD_STATES and new_status != DomainStatus.RELEASED

    if current_status == DomainStatus.PENDING:
        return new_status in (DomainStatus.ACTIVE, DomainStatus.FAILED)

    if current_status == DomainStatus.FAILED:
        return new_status == DomainStatus.ACTIVE

    return next_phase(current_status) == new_status


def compute_transition(
    current_status: str,
    deadline: Optional[datetime],
    now: datetime,
) -> str | None:
    """Determine whether a domain is due to leave its current phase.

    Args:
        current_status: The domain's status.
        deadline: The deadline column for that status (see DEADLINE_FIELDS).
        now: Reference time of the run.

    Returns:
        The next phase when the deadline is strictly in the past, else None.
    """
    if current_status not in DEADLINE_FIELDS or deadline is None:
        return None
    if deadline >= now:
        return None
    return next_phase(current_status)


def compute_phase_deadline(
    new_status: str,
    previous_deadline: Optional[datetime],
    now: datetime,
) -> Optional[datetime]:
    """Deadline for a phase the domain is entering.

    Anchored on the previous phase's deadline so cumulative offsets from
    expires_at hold (15, 45, 60, 75, 80 days) however late the run fires.
    """
    days = PHASE_DURATION_DAYS.get(new_status)
    if days is None:
        return None
    anchor = previous_deadline or now
    return anchor + timedelta(days=days)
