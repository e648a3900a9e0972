"""Shared pytest fixtures for the test suite."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import models  # noqa: F401  (registers tables on Base.metadata)
from database import Base, get_db
from domain.enums import DomainStatus, PendingOrderStatus, TriggeredBy
from models import Customer, Domain, PendingOrder
from services.clock import FixedClock
from services.ledger_store import record_lifecycle_event
from services.notification_dispatcher import RecordingNotificationDispatcher
from services.payment_gateway import InMemoryPaymentGateway
from services.scheduler import Scheduler, get_scheduler
from routes.auth import create_access_token


@pytest.fixture
def now() -> datetime:
    """A fixed naive-UTC timestamp for deterministic testing."""
    return datetime(2025, 1, 15, 12, 0, 0)


@pytest.fixture
def clock(now: datetime) -> FixedClock:
    return FixedClock(now)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions get separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway() -> InMemoryPaymentGateway:
    return InMemoryPaymentGateway()


@pytest.fixture
def dispatcher() -> RecordingNotificationDispatcher:
    return RecordingNotificationDispatcher()


@pytest.fixture
def scheduler(clock, gateway, dispatcher) -> Scheduler:
    return Scheduler(clock=clock, gateway=gateway, dispatcher=dispatcher)


@pytest.fixture
def client(session_factory, scheduler):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build bearer headers for an external user id."""
    def _headers(user_id: str, email: str | None = None) -> dict:
        claims = {"sub": user_id}
        if email:
            claims["email"] = email
        return {"Authorization": f"Bearer {create_access_token(claims)}"}
    return _headers


@pytest.fixture
def operator_headers() -> dict:
    """Bearer headers for the scheduling service."""
    token = create_access_token({"sub": "cron", "role": "service"})
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# Ledger factories
# =============================================================================


@pytest.fixture
def make_customer(db):
    def _make(user_id: str = "user-1", email: str | None = "owner@example.com") -> Customer:
        customer = Customer(user_id=user_id, email=email)
        db.add(customer)
        db.commit()
        db.refresh(customer)
        return customer
    return _make


@pytest.fixture
def make_domain(db, now):
    """Insert a domain with its creation event, in any status."""
    def _make(
        customer: Customer | None = None,
        status: str = DomainStatus.ACTIVE,
        fqdn: str = "prime.example",
        expires_at: datetime | None = None,
        **fields,
    ) -> Domain:
        domain = Domain(
            fqdn=fqdn,
            customer_id=customer.id if customer else None,
            status=status,
            expires_at=expires_at or now + timedelta(days=200),
            activated_at=now - timedelta(days=165) if status != DomainStatus.PENDING else None,
            is_transferable=fields.pop("is_transferable", True),
            **fields,
        )
        db.add(domain)
        db.flush()
        record_lifecycle_event(db, domain.id, None, status, TriggeredBy.SYSTEM, "created", now)
        db.commit()
        db.refresh(domain)
        return domain
    return _make


@pytest.fixture
def make_pending_order(db):
    def _make(
        external_order_id: str = "ORDER-1",
        user_id: str = "user-1",
        fqdn: str = "prime.example",
        amount: str = "95.00",
        email: str | None = "owner@example.com",
        plan_code: str | None = None,
    ) -> PendingOrder:
        pending = PendingOrder(
            user_id=user_id,
            email=email,
            fqdn=fqdn,
            amount=Decimal(amount),
            currency="USD",
            plan_code=plan_code,
            domain_type="personal",
            external_order_id=external_order_id,
            status=PendingOrderStatus.PENDING,
        )
        db.add(pending)
        db.commit()
        db.refresh(pending)
        return pending
    return _make
