"""
domain/ — Core domain rules for the Domain Ledger platform.

Pure modules with no ORM or HTTP dependency. Both the scheduled engines
and the request handlers build on these.

Modules:
    enums        — All domain enumerations
    lifecycle    — Domain lifecycle finite state machine + notification milestones
    exceptions   — Error taxonomy shared by services and routes
"""

from domain.enums import (
    DomainStatus,
    TriggeredBy,
    OrderStatus,
    OrderType,
    SubscriptionStatus,
    NotificationStatus,
    DiscrepancyType,
    RunStatus,
    TransferStatus,
    WebhookEventType,
)

__all__ = [
    "DomainStatus",
    "TriggeredBy",
    "OrderStatus",
    "OrderType",
    "SubscriptionStatus",
    "NotificationStatus",
    "DiscrepancyType",
    "RunStatus",
    "TransferStatus",
    "WebhookEventType",
]
