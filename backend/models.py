"""
SQLAlchemy ORM models for the Domain Ledger platform.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, Numeric,
    DateTime, ForeignKey, Index, UniqueConstraint, JSON, text,
)
from sqlalchemy.orm import relationship
from database import Base
from services.clock import utcnow


# ---------------------------------------------------------------------------
# Customer
# ---------------------------------------------------------------------------
class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String(100), nullable=False, unique=True, index=True)  # external auth id
    email = Column(String(200), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    domains = relationship("Domain", back_populates="customer")
    orders = relationship("Order", back_populates="customer")
    subscriptions = relationship("Subscription", back_populates="customer")


# ---------------------------------------------------------------------------
# Plan (reference data)
# ---------------------------------------------------------------------------
class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(30), nullable=False, unique=True, index=True)  # basic | prime | elite
    name = Column(String(100), nullable=False)
    billing_interval = Column(String(20), default="month")  # month | year
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Pending Order (checkout intent awaiting the processor's capture event)
# ---------------------------------------------------------------------------
class PendingOrder(Base):
    __tablename__ = "pending_orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String(100), nullable=False, index=True)
    email = Column(String(200), nullable=True)
    fqdn = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="USD")
    plan_code = Column(String(30), nullable=True)
    domain_type = Column(String(30), default="personal")  # personal | business

    external_order_id = Column(String(100), nullable=False, unique=True, index=True)
    status = Column(String(20), default="pending", index=True)  # pending | completed

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------
class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    domain_id = Column(Integer, ForeignKey("domains.id"), nullable=True, index=True)

    order_type = Column(String(20), default="registration")
    # registration | subscription | renewal | transfer

    # Processor order / subscription id, and the capture / sale id once captured
    external_order_id = Column(String(100), nullable=True, unique=True)
    external_transaction_id = Column(String(100), nullable=True, unique=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="USD")
    status = Column(String(20), default="pending", index=True)  # pending | completed | failed | refund_required

    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    customer = relationship("Customer", back_populates="orders")
    domain = relationship("Domain", back_populates="orders")


# ---------------------------------------------------------------------------
# Domain
# ---------------------------------------------------------------------------
class Domain(Base):
    __tablename__ = "domains"
    __table_args__ = (
        # One live lease per fqdn; released rows keep their fqdn for history
        Index(
            "uq_domain_live_fqdn",
            "fqdn",
            unique=True,
            postgresql_where=text("status != 'released'"),
            sqlite_where=text("status != 'released'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    fqdn = Column(String(255), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    domain_type = Column(String(30), default="personal")

    status = Column(String(30), default="pending", index=True)
    # pending | failed | active | grace | redemption | registry_hold | auction |
    # pending_delete | released | dispute_hold | fraud_hold | unpaid_hold

    expires_at = Column(DateTime, nullable=True, index=True)  # billing-cycle end
    activated_at = Column(DateTime, nullable=True)
    grace_until = Column(DateTime, nullable=True)
    redemption_until = Column(DateTime, nullable=True)
    registry_hold_until = Column(DateTime, nullable=True)
    auction_until = Column(DateTime, nullable=True)
    pending_delete_until = Column(DateTime, nullable=True)

    is_transferable = Column(Boolean, default=True)
    transfer_lock_until = Column(DateTime, nullable=True)
    suspension_reason = Column(String(300), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    customer = relationship("Customer", back_populates="domains")
    orders = relationship("Order", back_populates="domain")
    events = relationship("LifecycleEvent", back_populates="domain", order_by="LifecycleEvent.id")
    notifications = relationship("Notification", back_populates="domain")


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------
class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    external_subscription_id = Column(String(100), nullable=False, unique=True, index=True)

    status = Column(String(20), default="active", index=True)  # active | past_due | cancelled
    started_at = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    customer = relationship("Customer", back_populates="subscriptions")
    plan = relationship("Plan")


# ---------------------------------------------------------------------------
# Lifecycle Event (append-only audit trail)
# ---------------------------------------------------------------------------
class LifecycleEvent(Base):
    __tablename__ = "domain_lifecycle_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    domain_id = Column(Integer, ForeignKey("domains.id"), nullable=False, index=True)
    old_status = Column(String(30), nullable=True)  # NULL for the creation event
    new_status = Column(String(30), nullable=False)
    triggered_by = Column(String(20), nullable=False)  # scheduler | system | human
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    domain = relationship("Domain", back_populates="events")


# ---------------------------------------------------------------------------
# Notification (milestone messages scheduled ahead of time)
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "domain_notifications"
    __table_args__ = (
        UniqueConstraint("domain_id", "milestone", "scheduled_for", name="uq_notification_milestone"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    domain_id = Column(Integer, ForeignKey("domains.id"), nullable=False, index=True)
    milestone = Column(String(10), nullable=False)  # D-14 ... D+60
    scheduled_for = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), default="pending", index=True)  # pending | sent
    delivered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    domain = relationship("Domain", back_populates="notifications")


# ---------------------------------------------------------------------------
# Webhook Event (dedupe table for at-least-once deliveries)
# ---------------------------------------------------------------------------
class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_webhook_event_provider_external_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    provider = Column(String(30), nullable=False)  # paypal
    external_id = Column(String(100), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=True)

    received_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Reconciliation Run
# ---------------------------------------------------------------------------
class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)

    external_checked = Column(Integer, default=0)
    internal_checked = Column(Integer, default=0)
    discrepancies_found = Column(Integer, default=0)
    discrepancies_resolved = Column(Integer, default=0)

    status = Column(String(20), default="running", index=True)  # running | completed | failed
    execution_time_ms = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    discrepancies = relationship("Discrepancy", back_populates="run")


# ---------------------------------------------------------------------------
# Discrepancy
# ---------------------------------------------------------------------------
class Discrepancy(Base):
    __tablename__ = "payment_discrepancies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reconciliation_id = Column(Integer, ForeignKey("reconciliation_runs.id"), nullable=False, index=True)
    discrepancy_type = Column(String(30), nullable=False, index=True)
    # missing_in_db | status_mismatch | amount_mismatch

    external_transaction_id = Column(String(100), nullable=False, index=True)
    external_amount = Column(Numeric(12, 2), nullable=True)
    external_status = Column(String(20), nullable=True)

    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    internal_amount = Column(Numeric(12, 2), nullable=True)
    internal_status = Column(String(20), nullable=True)

    notes = Column(Text, nullable=True)
    auto_resolved = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    run = relationship("ReconciliationRun", back_populates="discrepancies")


# ---------------------------------------------------------------------------
# Transfer (ownership transfer between two customers)
# ---------------------------------------------------------------------------
class Transfer(Base):
    __tablename__ = "domain_transfers"
    __table_args__ = (
        # One open transfer per domain
        Index(
            "uq_transfer_pending_domain",
            "domain_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    domain_id = Column(Integer, ForeignKey("domains.id"), nullable=False)
    from_customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    to_customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)

    transfer_fee = Column(Numeric(12, 2), nullable=False)
    new_period_fee = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="USD")

    status = Column(String(20), default="pending", index=True)  # pending | completed | cancelled
    external_order_id = Column(String(100), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)

    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    domain = relationship("Domain")
    from_customer = relationship("Customer", foreign_keys=[from_customer_id])
    to_customer = relationship("Customer", foreign_keys=[to_customer_id])
