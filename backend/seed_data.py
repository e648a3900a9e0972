"""
Seed data for the Domain Ledger platform.
Seeds only reference data: the subscription plans offered at checkout.
Customers, domains and orders are created through the app.
"""

import logging
from sqlalchemy.orm import Session

from models import Plan

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Subscription plans
# ---------------------------------------------------------------------------
PLANS = [
    {"code": "basic", "name": "Basic", "billing_interval": "month"},
    {"code": "prime", "name": "Prime", "billing_interval": "month"},
    {"code": "elite", "name": "Elite", "billing_interval": "year"},
]


def seed_database(db: Session) -> int:
    """Insert any missing plans. Returns how many were created."""
    existing = {code for (code,) in db.query(Plan.code).all()}

    created = 0
    for p_data in PLANS:
        if p_data["code"] in existing:
            continue
        db.add(Plan(**p_data))
        created += 1

    if created:
        db.commit()
        logger.info(f"Created {created} plans")
    else:
        logger.info(f"Database already has {len(existing)} plans. Skipping seed.")
    return created
