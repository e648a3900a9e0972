"""
Scheduler for the time-driven jobs.

The platform has no in-process timer: an external cron POSTs the trigger
endpoints, which call into the Scheduler. It owns the clock, the payment
gateway and the notification dispatcher so every job reads "now" from
one injectable place.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from services.clock import Clock, SystemClock
from services.lifecycle_engine import run_daily_transitions
from services.notification_dispatcher import LoggingNotificationDispatcher, NotificationDispatcher
from services.payment_gateway import PaymentGateway, build_gateway
from services.reconciliation import reconcile_payments

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        clock: Clock,
        gateway: PaymentGateway,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.clock = clock
        self.gateway = gateway
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()

    def now(self) -> datetime:
        return self.clock.now()

    def run_lifecycle(self, db: Session) -> dict:
        return run_daily_transitions(db, self.clock.now(), self.dispatcher)

    def run_reconciliation(
        self,
        db: Session,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> dict:
        return reconcile_payments(db, self.gateway, self.clock.now(), window_start, window_end)


_scheduler: Optional[Scheduler] = None


def get_scheduler() -> Scheduler:
    """FastAPI dependency: process-wide scheduler on the system clock."""
    global _scheduler
    if _scheduler is None:
        _scheduler = Scheduler(clock=SystemClock(), gateway=build_gateway())
        logger.info(f"Scheduler ready (gateway dev_mode={_scheduler.gateway.dev_mode})")
    return _scheduler
