"""
Routes package for the Domain Ledger API.
Import all routers here for use in main.py.
"""

from routes.auth import router as auth_router
from routes.checkout import router as checkout_router
from routes.domains import router as domains_router
from routes.lifecycle import router as lifecycle_router
from routes.reconciliation import router as reconciliation_router
from routes.transfers import router as transfers_router
from routes.webhooks import router as webhooks_router

__all__ = [
    "auth_router",
    "checkout_router",
    "domains_router",
    "lifecycle_router",
    "reconciliation_router",
    "transfers_router",
    "webhooks_router",
]
