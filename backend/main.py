"""
Domain Ledger Platform - FastAPI Application Entry Point

Premium-domain subscription backend: domain lifecycle, idempotent payment
capture, payment reconciliation and ownership transfers.

Scheduled work has no in-process timer. External cron jobs POST:
  - /api/v1/lifecycle/run        (daily)
  - /api/v1/reconciliation/run   (hourly or daily)
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import init_db, SessionLocal
from domain.exceptions import ExternalServiceError, PlatformError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("domain_ledger")

# Track DB readiness
_db_ready = False


def _run_seed():
    """Seed reference data (plans) if missing."""
    from seed_data import seed_database

    db = SessionLocal()
    try:
        seed_database(db)
    except SQLAlchemyError as e:
        logger.error(f"Seeding error: {e}")
        db.rollback()
    finally:
        db.close()


def _paypal_mode() -> str:
    if settings.paypal_configured:
        return settings.PAYPAL_MODE
    return "dev" if settings.payment_dev_mode else "unconfigured"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    global _db_ready

    logger.info("=" * 60)
    logger.info(f"  {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"  Database: {'PostgreSQL' if settings.is_postgres else 'SQLite'}")
    logger.info(f"  PayPal: {_paypal_mode()}")
    logger.info("=" * 60)

    try:
        init_db()
        _run_seed()
        _db_ready = True
        logger.info("DB init complete.")
    except SQLAlchemyError as e:
        logger.error(f"DB init failed: {e}")
        _db_ready = False

    yield

    logger.info("Shutting down...")


# ---------------------------------------------------------------------------
# Create FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "REST API for the Domain Ledger Platform - domain lifecycle, "
        "payment capture, reconciliation and transfers."
    ),
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS Middleware
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(PlatformError)
async def platform_error_handler(request: Request, exc: PlatformError):
    body = {"success": False, "error": str(exc)}
    if isinstance(exc, ExternalServiceError):
        body["retryable"] = exc.retryable
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(SQLAlchemyError)
async def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"{request.method} {request.url.path} database error: {exc}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Database error"})


# ---------------------------------------------------------------------------
# Include all route routers under /api/v1
# ---------------------------------------------------------------------------
from routes import (
    auth_router,
    checkout_router,
    domains_router,
    lifecycle_router,
    reconciliation_router,
    transfers_router,
    webhooks_router,
)

API_PREFIX = "/api/v1"

all_routers = [
    webhooks_router,
    lifecycle_router,
    reconciliation_router,
    checkout_router,
    transfers_router,
    domains_router,
    auth_router,
]

# Mount under /api/v1
for r in all_routers:
    app.include_router(r, prefix=API_PREFIX)

# Also mount at root (cron jobs and processor webhooks configured without prefix)
for r in all_routers:
    app.include_router(r)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@app.get("/", tags=["Health"])
def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"])
def health_check():
    result = {
        "status": "healthy",
        "database": "ready" if _db_ready else "initializing",
        "database_backend": "postgresql" if settings.is_postgres else "sqlite",
        "version": settings.APP_VERSION,
        "paypal_mode": _paypal_mode(),
        "webhook_signature_check": bool(settings.PAYPAL_WEBHOOK_SECRET),
    }

    if _db_ready:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            result["database"] = f"error: {str(e)}"
        finally:
            db.close()

    return result
