"""
Hand-off point to the notification delivery service.

The lifecycle engine marks due milestone notifications as sent and passes
each one to a dispatcher. Actual email/SMS delivery is owned by an
external service that reads from here.
"""

import logging
from abc import ABC, abstractmethod

from models import Notification

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    @abstractmethod
    def dispatch(self, notification: Notification, fqdn: str) -> None:
        ...


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Default dispatcher: records the hand-off in the log."""

    def dispatch(self, notification: Notification, fqdn: str) -> None:
        logger.info(
            "Notification %s (%s) for %s handed to delivery",
            notification.id, notification.milestone, fqdn,
        )


class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps dispatched notifications in memory (useful for replays and tests)."""

    def __init__(self):
        self.dispatched: list[tuple[int, str, str]] = []

    def dispatch(self, notification: Notification, fqdn: str) -> None:
        self.dispatched.append((notification.domain_id, notification.milestone, fqdn))
