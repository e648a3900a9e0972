"""
domain/enums.py — All domain enumerations for the Domain Ledger platform.

Uses StrEnum so values serialize cleanly to JSON and can be stored
directly in TEXT columns.
"""
from __future__ import annotations

from enum import StrEnum


# ---------------------------------------------------------------------------
# Domain Lifecycle
# ---------------------------------------------------------------------------
class DomainStatus(StrEnum):
    """Every status a leased domain can be in.

    Fulfilment:  PENDING -> ACTIVE (or FAILED when activation breaks)
    Expiry path: ACTIVE -> GRACE -> REDEMPTION -> REGISTRY_HOLD -> AUCTION
                 -> PENDING_DELETE -> RELEASED
    Holds:       DISPUTE_HOLD / FRAUD_HOLD / UNPAID_HOLD (external, manual clear)
    """
    PENDING = "pending"
    FAILED = "failed"
    ACTIVE = "active"
    GRACE = "grace"
    REDEMPTION = "redemption"
    REGISTRY_HOLD = "registry_hold"
    AUCTION = "auction"
    PENDING_DELETE = "pending_delete"
    RELEASED = "released"
    DISPUTE_HOLD = "dispute_hold"
    FRAUD_HOLD = "fraud_hold"
    UNPAID_HOLD = "unpaid_hold"


class TriggeredBy(StrEnum):
    """Actor recorded on every lifecycle event."""
    SCHEDULER = "scheduler"
    SYSTEM = "system"
    HUMAN = "human"


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------
class OrderStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUND_REQUIRED = "refund_required"  # paid, but the fqdn was taken by then


class OrderType(StrEnum):
    REGISTRATION = "registration"
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    TRANSFER = "transfer"


class PendingOrderStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
class NotificationStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
class DiscrepancyType(StrEnum):
    MISSING_IN_DB = "missing_in_db"
    STATUS_MISMATCH = "status_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"


class RunStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------
class TransferStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Payment processor events
# ---------------------------------------------------------------------------
class WebhookEventType(StrEnum):
    """PayPal event names handled by the capture handler."""
    CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
    CAPTURE_PENDING = "PAYMENT.CAPTURE.PENDING"
    SUBSCRIPTION_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
    SUBSCRIPTION_PAYMENT = "PAYMENT.SALE.COMPLETED"
    PAYMENT_FAILED = "BILLING.SUBSCRIPTION.PAYMENT.FAILED"
    SUBSCRIPTION_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
    SUBSCRIPTION_SUSPENDED = "BILLING.SUBSCRIPTION.SUSPENDED"


# Short names accepted on the webhook endpoint alongside the PayPal names.
EVENT_TYPE_ALIASES: dict[str, WebhookEventType] = {
    "capture-completed": WebhookEventType.CAPTURE_COMPLETED,
    "capture-pending": WebhookEventType.CAPTURE_PENDING,
    "subscription-activated": WebhookEventType.SUBSCRIPTION_ACTIVATED,
    "subscription-payment": WebhookEventType.SUBSCRIPTION_PAYMENT,
    "payment-failed": WebhookEventType.PAYMENT_FAILED,
    "subscription-cancelled": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "subscription-suspended": WebhookEventType.SUBSCRIPTION_SUSPENDED,
}
