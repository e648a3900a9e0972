"""
Pydantic schemas for request/response validation.

Payment processor events are a tagged union keyed by ``event_type``: each
known event carries its own validated resource schema. Both the PayPal
event names and the short aliases are accepted as tags.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


# ============================= Processor Resources =============================

class Money(BaseModel):
    """Orders API amount (``value`` / ``currency_code``)."""
    model_config = ConfigDict(extra="allow")

    value: Decimal
    currency_code: str = "USD"


class SaleAmount(BaseModel):
    """Legacy sale amount (``total`` / ``currency``)."""
    model_config = ConfigDict(extra="allow")

    total: Decimal
    currency: str = "USD"


class RelatedIds(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_id: Optional[str] = None


class SupplementaryData(BaseModel):
    model_config = ConfigDict(extra="allow")

    related_ids: Optional[RelatedIds] = None


class CaptureResource(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    status: Optional[str] = None
    amount: Optional[Money] = None
    supplementary_data: Optional[SupplementaryData] = None

    @property
    def processor_order_id(self) -> str:
        """Checkout order this capture belongs to (falls back to the resource id)."""
        related = self.supplementary_data.related_ids if self.supplementary_data else None
        if related and related.order_id:
            return related.order_id
        return self.id


class BillingInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    next_billing_time: Optional[str] = None


class SubscriptionResource(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    status: Optional[str] = None
    plan_id: Optional[str] = None
    custom_id: Optional[str] = None
    start_time: Optional[str] = None
    billing_info: Optional[BillingInfo] = None


class SubscriptionActivatedResource(SubscriptionResource):
    """Activation must carry ``custom_id`` as ``"<user_id>|<fqdn>"``."""

    custom_id: str

    @field_validator("custom_id")
    @classmethod
    def check_custom_id(cls, v: str) -> str:
        user_id, sep, fqdn = v.partition("|")
        if not sep or not user_id.strip() or not fqdn.strip():
            raise ValueError("custom_id must be '<user_id>|<fqdn>'")
        return v

    @property
    def user_id(self) -> str:
        return self.custom_id.partition("|")[0].strip()

    @property
    def fqdn(self) -> str:
        return self.custom_id.partition("|")[2].strip()


class SaleResource(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    billing_agreement_id: str = Field(..., min_length=1)
    state: Optional[str] = None
    amount: Optional[SaleAmount] = None


# ============================= Processor Events =============================

class _EventBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    create_time: Optional[str] = None
    summary: Optional[str] = None


class CaptureCompletedEvent(_EventBase):
    event_type: Literal["PAYMENT.CAPTURE.COMPLETED", "capture-completed"]
    resource: CaptureResource


class CapturePendingEvent(_EventBase):
    event_type: Literal["PAYMENT.CAPTURE.PENDING", "capture-pending"]
    resource: CaptureResource


class SubscriptionActivatedEvent(_EventBase):
    event_type: Literal["BILLING.SUBSCRIPTION.ACTIVATED", "subscription-activated"]
    resource: SubscriptionActivatedResource


class SubscriptionPaymentEvent(_EventBase):
    event_type: Literal["PAYMENT.SALE.COMPLETED", "subscription-payment"]
    resource: SaleResource


class PaymentFailedEvent(_EventBase):
    event_type: Literal["BILLING.SUBSCRIPTION.PAYMENT.FAILED", "payment-failed"]
    resource: SubscriptionResource


class SubscriptionCancelledEvent(_EventBase):
    event_type: Literal[
        "BILLING.SUBSCRIPTION.CANCELLED",
        "subscription-cancelled",
        "BILLING.SUBSCRIPTION.SUSPENDED",
        "subscription-suspended",
    ]
    resource: SubscriptionResource


PaymentEvent = Annotated[
    Union[
        CaptureCompletedEvent,
        CapturePendingEvent,
        SubscriptionActivatedEvent,
        SubscriptionPaymentEvent,
        PaymentFailedEvent,
        SubscriptionCancelledEvent,
    ],
    Field(discriminator="event_type"),
]

payment_event_adapter = TypeAdapter(PaymentEvent)


class EventEnvelope(BaseModel):
    """Minimal shape every delivery must have, known type or not."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    resource: Any = None


class WebhookResult(BaseModel):
    success: bool
    order_id: Optional[int] = None
    domain_id: Optional[int] = None
    subscription_id: Optional[int] = None
    domain_status: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


# ============================= Domain Schemas =============================

class DomainResponse(BaseModel):
    id: int
    fqdn: str
    customer_id: Optional[int] = None
    domain_type: Optional[str] = None
    status: str
    expires_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    grace_until: Optional[datetime] = None
    redemption_until: Optional[datetime] = None
    registry_hold_until: Optional[datetime] = None
    auction_until: Optional[datetime] = None
    pending_delete_until: Optional[datetime] = None
    is_transferable: bool
    transfer_lock_until: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class LifecycleEventResponse(BaseModel):
    id: int
    domain_id: int
    old_status: Optional[str] = None
    new_status: str
    triggered_by: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class HoldRequest(BaseModel):
    hold: Literal["dispute_hold", "fraud_hold", "unpaid_hold"]
    notes: Optional[str] = Field(None, max_length=300)


class ClearHoldRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=300)


# ============================= Lifecycle Run Schemas =============================

class TransitionRecord(BaseModel):
    domain_id: int
    fqdn: str
    current_status: str
    new_status: str
    reason: str


class StageError(BaseModel):
    stage: str
    error: str


class LifecycleRunResponse(BaseModel):
    timestamp: str
    transitions_processed: int
    notifications_sent: int
    transitions: List[TransitionRecord] = []
    errors: List[StageError] = []


# ============================= Reconciliation Schemas =============================

class ReconciliationRunRequest(BaseModel):
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


class ReconciliationRunResponse(BaseModel):
    id: int
    window_start: datetime
    window_end: datetime
    external_checked: int
    internal_checked: int
    discrepancies_found: int
    discrepancies_resolved: int
    status: str
    execution_time_ms: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DiscrepancyResponse(BaseModel):
    id: int
    reconciliation_id: int
    discrepancy_type: str
    external_transaction_id: str
    external_amount: Optional[Decimal] = None
    external_status: Optional[str] = None
    order_id: Optional[int] = None
    internal_amount: Optional[Decimal] = None
    internal_status: Optional[str] = None
    notes: Optional[str] = None
    auto_resolved: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ============================= Checkout Schemas =============================

class CheckoutOrderCreate(BaseModel):
    fqdn: str = Field(..., min_length=3, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    plan_code: Optional[str] = None
    domain_type: str = "personal"
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @field_validator("fqdn")
    @classmethod
    def normalize_fqdn(cls, v: str) -> str:
        v = v.strip().lower()
        if " " in v or "." not in v:
            raise ValueError("fqdn must be a dotted domain name")
        return v


class CheckoutOrderResponse(BaseModel):
    order_id: str
    approve_url: Optional[str] = None
    dev_mode: bool = False


class SubscriptionCheckoutCreate(CheckoutOrderCreate):
    plan_code: str = Field(..., min_length=1, max_length=30)
    processor_plan_id: str = Field(..., min_length=1, max_length=100)  # PayPal billing plan id


class SubscriptionCheckoutResponse(BaseModel):
    subscription_id: str
    approve_url: Optional[str] = None
    dev_mode: bool = False


# ============================= Transfer Schemas =============================

class TransferCreate(BaseModel):
    domain_id: int
    to_email: str = Field(..., min_length=3, max_length=200)


class TransferPaymentRequest(BaseModel):
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class TransferCompleteRequest(BaseModel):
    processor_order_id: str = Field(..., min_length=1)


class TransferResponse(BaseModel):
    id: int
    domain_id: int
    from_customer_id: int
    to_customer_id: int
    transfer_fee: Decimal
    new_period_fee: Decimal
    total_amount: Decimal
    currency: str
    status: str
    external_order_id: Optional[str] = None
    order_id: Optional[int] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TransferPaymentResponse(BaseModel):
    transfer_id: int
    order_id: str
    approve_url: Optional[str] = None
